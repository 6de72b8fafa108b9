"""
Suggestions for shell completion.

For `prp repo add`, the viewer's own repositories are suggested directly;
forks are resolved to their source repository, which is what pull requests
usually target. For `prp auto-rebase -n`, the numbers of the viewer's pull
requests that need a rebase.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Protocol

from .config import TrackedRepo
from .github import GitHubAPIError, GitHubRepository
from .pull_request import PullRequestRecord

logger = logging.getLogger(__name__)


class RepositorySource(Protocol):
    def list_repositories_for_user(self, login: str) -> list[GitHubRepository]:
        ...

    def get_repository(self, owner: str, name: str) -> GitHubRepository:
        ...


def _candidate(source: RepositorySource, repo: GitHubRepository) -> tuple[str, str] | None:
    """The (owner, name) a repository suggests: itself, or its source when a fork."""
    if not repo.fork:
        return repo.owner, repo.name

    try:
        full = source.get_repository(repo.owner, repo.name)
    except GitHubAPIError as e:
        logger.debug("Could not resolve fork %s/%s: %s", repo.owner, repo.name, e)
        return None

    if not full.source_owner or not full.source_name:
        return None
    return full.source_owner, full.source_name


def suggest_repositories(
    source: RepositorySource,
    viewer: str,
    tracked: Iterable[TrackedRepo],
    owner: str | None = None,
    max_workers: int = 8,
) -> list[str]:
    """
    Suggest owners (when owner is None) or repository names for an owner.

    Fork sources that are already tracked are left out.
    """
    tracked_names = {(repo.owner, repo.name) for repo in tracked}
    repositories = source.list_repositories_for_user(viewer)

    with ThreadPoolExecutor(max_workers=max(max_workers, 1)) as executor:
        candidates = list(executor.map(lambda repo: _candidate(source, repo), repositories))

    suggestions = set()
    for repo, candidate in zip(repositories, candidates):
        if candidate is None:
            continue
        if repo.fork and candidate in tracked_names:
            continue
        candidate_owner, candidate_name = candidate
        if owner is None:
            suggestions.add(candidate_owner)
        elif candidate_owner == owner:
            suggestions.add(candidate_name)

    return sorted(suggestions)


def suggest_pull_request_numbers(records: Iterable[PullRequestRecord]) -> list[str]:
    """Unique pull request numbers, sorted as the shell lists them."""
    return sorted({str(record.number) for record in records})
