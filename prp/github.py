"""
GitHub REST API client for Prp.

Fetches open pull requests and the data used to enrich them: commit
comparisons, comments, reviews, labels and commit statuses.
Uses the profile token (or GITHUB_TOKEN environment variable) for authentication.

Supports:
- Full pagination via the Link header
- Per-request timeouts
- Retry on transient transport errors
- Rate limit detection
- Optional on-disk response cache (ETag revalidation)
"""

from __future__ import annotations

import hashlib
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import requests
import requests_cache

from . import __version__


GITHUB_API_BASE = "https://api.github.com"
DEFAULT_PER_PAGE = 100
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
RETRY_DELAY = 1.0
DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "prpCache"


@dataclass
class GitHubPullRequest:
    """Parsed GitHub pull request data."""
    number: int
    title: str
    author: str
    head_ref: str
    base_ref: str
    head_label: str
    base_label: str
    head_sha: str
    head_ssh_url: str
    base_ssh_url: str


@dataclass
class GitHubComment:
    """Parsed issue comment."""
    author: str
    body: str


@dataclass
class GitHubReview:
    """Parsed pull request review."""
    author: str
    state: str  # APPROVED, CHANGES_REQUESTED, COMMENTED, ...


@dataclass
class GitHubStatus:
    """Parsed commit status."""
    context: str
    state: str  # success, failure, error, pending


@dataclass
class GitHubRepository:
    """Parsed repository data. source is set for forks fetched individually."""
    owner: str
    name: str
    fork: bool = False
    source_owner: str | None = None
    source_name: str | None = None


class GitHubAPIError(Exception):
    """Error from GitHub API."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GitHubAPIError):
    """Rate limit exceeded."""
    def __init__(self, reset_time: int | None = None):
        super().__init__("GitHub API rate limit exceeded", 403)
        self.reset_time = reset_time


class GitHubClient:
    """GitHub REST API client with pagination, timeouts and rate limit handling."""

    def __init__(
        self,
        token: str | None = None,
        api_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        cache_dir: str | Path | None = None,
    ):
        self.token = token or os.environ.get("GITHUB_TOKEN")
        self.api_url = (api_url or GITHUB_API_BASE).rstrip("/")
        self.timeout = timeout
        self.session = self._make_session(cache_dir)

        if self.token:
            self.session.headers["Authorization"] = f"token {self.token}"

        self.session.headers["Accept"] = "application/vnd.github.v3+json"
        self.session.headers["User-Agent"] = f"prp/{__version__}"

    def _make_session(self, cache_dir: str | Path | None) -> requests.Session:
        """
        Plain session, or one caching responses on disk when cache_dir is set.

        Cached responses follow GitHub's Cache-Control headers and are
        revalidated with their ETag once stale. Each API URL and token pair
        gets its own cache so profiles never see each other's data.
        """
        if cache_dir is None:
            return requests.Session()

        identity = f"{self.api_url}|{self.token or ''}".encode()
        cache_name = Path(cache_dir) / hashlib.sha256(identity).hexdigest()[:16]
        return requests_cache.CachedSession(
            str(cache_name),
            backend="filesystem",
            cache_control=True,
        )

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Make an API request with retry and rate limit handling."""
        url = endpoint if endpoint.startswith("http") else f"{self.api_url}{endpoint}"
        kwargs.setdefault("timeout", self.timeout)

        for attempt in range(MAX_RETRIES):
            try:
                response = self.session.request(method, url, params=params, **kwargs)
            except requests.RequestException as e:
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_DELAY * (attempt + 1))
                    continue
                raise GitHubAPIError(f"Request failed: {e}") from e

            if response.status_code == 403:
                remaining = response.headers.get("X-RateLimit-Remaining")
                if remaining == "0":
                    reset_time = int(response.headers.get("X-RateLimit-Reset", 0))
                    raise RateLimitError(reset_time)

            if response.status_code >= 400:
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code} - {response.text}",
                    response.status_code,
                )

            return response

        raise GitHubAPIError("Max retries exceeded")

    def _paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Iterate through every page of a list endpoint."""
        params = dict(params or {})
        params.setdefault("per_page", DEFAULT_PER_PAGE)
        url: str | None = endpoint

        while url:
            response = self._request("GET", url, params=params)
            for item in response.json() or []:
                yield item

            # The next link already carries the query string
            url = response.links.get("next", {}).get("url")
            params = None

    def get_viewer(self) -> str:
        """Return the login of the authenticated user."""
        response = self._request("GET", "/user")
        return response.json().get("login", "")

    def list_pull_requests(self, owner: str, repo: str) -> list[GitHubPullRequest]:
        """List all open pull requests for a repository."""
        endpoint = f"/repos/{owner}/{repo}/pulls"
        return [
            self._parse_pr(item)
            for item in self._paginate(endpoint, {"state": "open"})
        ]

    def compare_commits(self, owner: str, repo: str, head_label: str, base_label: str) -> int:
        """
        Count commits on the target branch that the pull request branch lacks.

        The comparison is made with the pull request branch as the base and
        the target branch as the head, so ``ahead_by`` is zero exactly when
        the pull request branch already contains the whole target branch.
        """
        endpoint = f"/repos/{owner}/{repo}/compare/{head_label}...{base_label}"
        response = self._request("GET", endpoint)
        return int(response.json().get("ahead_by", 0))

    def list_issue_comments(self, owner: str, repo: str, number: int) -> list[GitHubComment]:
        endpoint = f"/repos/{owner}/{repo}/issues/{number}/comments"
        return [
            GitHubComment(
                author=(item.get("user") or {}).get("login", ""),
                body=item.get("body") or "",
            )
            for item in self._paginate(endpoint)
        ]

    def list_reviews(self, owner: str, repo: str, number: int) -> list[GitHubReview]:
        endpoint = f"/repos/{owner}/{repo}/pulls/{number}/reviews"
        return [
            GitHubReview(
                author=(item.get("user") or {}).get("login", ""),
                state=item.get("state") or "",
            )
            for item in self._paginate(endpoint)
        ]

    def list_labels(self, owner: str, repo: str, number: int) -> list[str]:
        endpoint = f"/repos/{owner}/{repo}/issues/{number}/labels"
        return [item["name"] for item in self._paginate(endpoint) if item.get("name")]

    def list_commit_statuses(self, owner: str, repo: str, sha: str) -> list[GitHubStatus]:
        """List statuses for a commit, newest first."""
        endpoint = f"/repos/{owner}/{repo}/commits/{sha}/statuses"
        return [
            GitHubStatus(context=item.get("context") or "", state=item.get("state") or "")
            for item in self._paginate(endpoint)
        ]

    def list_repositories_for_user(self, login: str) -> list[GitHubRepository]:
        endpoint = f"/users/{login}/repos"
        return [self._parse_repository(item) for item in self._paginate(endpoint)]

    def get_repository(self, owner: str, name: str) -> GitHubRepository:
        """Get a single repository, including its source when it is a fork."""
        response = self._request("GET", f"/repos/{owner}/{name}")
        return self._parse_repository(response.json())

    def _parse_pr(self, data: dict[str, Any]) -> GitHubPullRequest:
        """Parse raw PR data into GitHubPullRequest object."""
        head = data.get("head") or {}
        base = data.get("base") or {}
        # head.repo is null when the fork has been deleted
        head_repo = head.get("repo") or {}
        base_repo = base.get("repo") or {}

        return GitHubPullRequest(
            number=data.get("number", 0),
            title=data.get("title") or "",
            author=(head.get("user") or {}).get("login", ""),
            head_ref=head.get("ref", ""),
            base_ref=base.get("ref", ""),
            head_label=head.get("label", ""),
            base_label=base.get("label", ""),
            head_sha=head.get("sha", ""),
            head_ssh_url=head_repo.get("ssh_url", ""),
            base_ssh_url=base_repo.get("ssh_url", ""),
        )

    def _parse_repository(self, data: dict[str, Any]) -> GitHubRepository:
        source = data.get("source") or {}
        return GitHubRepository(
            owner=(data.get("owner") or {}).get("login", ""),
            name=data.get("name", ""),
            fork=bool(data.get("fork", False)),
            source_owner=(source.get("owner") or {}).get("login") if source else None,
            source_name=source.get("name") if source else None,
        )
