"""
Concurrent pull request aggregation.

Fans out over tracked repositories and, per repository, over its open pull
requests. Every enrichment call for a pull request runs in the shared worker
pool; the consumer joins the partial results and yields one finished record
per pull request as soon as all of its calls have completed.

Failures stay local to the item that failed:
- an enrichment call that fails leaves its field at the zero value
- a repository whose pull requests cannot be listed is reported to the
  error sink and contributes no records
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Protocol

from .config import TrackedRepo
from .github import GitHubComment, GitHubPullRequest, GitHubReview, GitHubStatus
from .pull_request import (
    Enrichment,
    PullRequestRecord,
    approvers_from_comments,
    approvers_from_reviews,
    build_status,
    fold_enrichment,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class PullRequestSource(Protocol):
    """The remote calls the aggregator needs. GitHubClient satisfies this."""

    def list_pull_requests(self, owner: str, repo: str) -> list[GitHubPullRequest]:
        ...

    def compare_commits(self, owner: str, repo: str, head_label: str, base_label: str) -> int:
        ...

    def list_issue_comments(self, owner: str, repo: str, number: int) -> list[GitHubComment]:
        ...

    def list_reviews(self, owner: str, repo: str, number: int) -> list[GitHubReview]:
        ...

    def list_labels(self, owner: str, repo: str, number: int) -> list[str]:
        ...

    def list_commit_statuses(self, owner: str, repo: str, sha: str) -> list[GitHubStatus]:
        ...


@dataclass
class _PendingPullRequest:
    record: PullRequestRecord
    enrichment: Enrichment = field(default_factory=Enrichment)
    remaining: int = 0


# Stores the result of one enrichment call on the partial results
_Apply = Callable[[Enrichment, Any], None]


def _apply_ahead_by(enrichment: Enrichment, ahead_by: int) -> None:
    enrichment.ahead_by = ahead_by


def _apply_comments(enrichment: Enrichment, comments: list[GitHubComment]) -> None:
    enrichment.approvers |= approvers_from_comments(comments)


def _apply_reviews(enrichment: Enrichment, reviews: list[GitHubReview]) -> None:
    enrichment.approvers |= approvers_from_reviews(reviews)


def _apply_labels(enrichment: Enrichment, labels: list[str]) -> None:
    enrichment.labels = list(labels)


class Aggregator:
    """Collects and enriches open pull requests across tracked repositories."""

    def __init__(
        self,
        source: PullRequestSource,
        max_workers: int = DEFAULT_MAX_WORKERS,
        error_sink: Callable[[str], None] | None = None,
        cancel_event: threading.Event | None = None,
        hide_rebased: bool = False,
    ):
        self.source = source
        self.max_workers = max(max_workers, 1)
        self.error_sink = error_sink or logger.error
        self.cancel_event = cancel_event
        self.hide_rebased = hide_rebased

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def aggregate(self, repos: Iterable[TrackedRepo], viewer: str) -> Iterator[PullRequestRecord]:
        """
        Yield one enriched record per open pull request, in completion order.

        The iterator is exhausted only after every listing and enrichment
        call it started has finished.
        """
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="prp-fetch") as executor:
            listings: dict[Future, TrackedRepo] = {}
            enrichments: dict[Future, tuple[_PendingPullRequest, str, _Apply]] = {}

            for repo in repos:
                if self._cancelled():
                    break
                future = executor.submit(self.source.list_pull_requests, repo.owner, repo.name)
                listings[future] = repo

            try:
                while listings or enrichments:
                    done, _ = wait([*listings, *enrichments], return_when=FIRST_COMPLETED)

                    for future in done:
                        if future in listings:
                            repo = listings.pop(future)
                            for pending in self._handle_listing(future, repo, viewer):
                                self._schedule_enrichment(executor, pending, enrichments)
                            continue

                        pending, name, apply = enrichments.pop(future)
                        self._handle_enrichment(future, pending, name, apply)
                        if pending.remaining == 0 and not self._cancelled():
                            yield fold_enrichment(
                                pending.record, pending.enrichment, viewer, self.hide_rebased
                            )

                    if self._cancelled():
                        self._cancel_all(listings, enrichments)
            except (KeyboardInterrupt, GeneratorExit):
                # Consumer went away: drop queued calls, let running ones finish
                self._cancel_all(listings, enrichments)
                raise

    @staticmethod
    def _cancel_all(*futures: Iterable[Future]) -> None:
        for group in futures:
            for future in group:
                future.cancel()

    def _handle_listing(
        self,
        future: Future,
        repo: TrackedRepo,
        viewer: str,
    ) -> list[_PendingPullRequest]:
        if future.cancelled():
            return []
        try:
            pull_requests = future.result()
        except Exception as e:
            self.error_sink(f"Unable to list pull requests for {repo.full_name}: {e}")
            return []

        logger.debug("Found %d open pull requests in %s", len(pull_requests), repo.full_name)
        return [
            _PendingPullRequest(record=PullRequestRecord.from_github(repo, pr, viewer))
            for pr in pull_requests
        ]

    def _schedule_enrichment(
        self,
        executor: ThreadPoolExecutor,
        pending: _PendingPullRequest,
        enrichments: dict[Future, tuple[_PendingPullRequest, str, _Apply]],
    ) -> None:
        if self._cancelled():
            return

        record = pending.record
        owner, name, number = record.repo_owner, record.repo_name, record.number
        ignored = record.ignored_builds

        def apply_statuses(enrichment: Enrichment, statuses: list[GitHubStatus]) -> None:
            enrichment.build_status = build_status(statuses, ignored)

        calls: list[tuple[str, Callable[..., Any], tuple[Any, ...], _Apply]] = [
            ("commit comparison", self.source.compare_commits,
             (owner, name, record.head_label, record.base_label), _apply_ahead_by),
            ("comments", self.source.list_issue_comments, (owner, name, number), _apply_comments),
            ("reviews", self.source.list_reviews, (owner, name, number), _apply_reviews),
            ("labels", self.source.list_labels, (owner, name, number), _apply_labels),
            ("statuses", self.source.list_commit_statuses, (owner, name, record.head_sha), apply_statuses),
        ]

        pending.remaining = len(calls)
        for call_name, call, args, apply in calls:
            enrichments[executor.submit(call, *args)] = (pending, call_name, apply)

    def _handle_enrichment(
        self,
        future: Future,
        pending: _PendingPullRequest,
        name: str,
        apply: _Apply,
    ) -> None:
        pending.remaining -= 1
        if future.cancelled():
            return
        try:
            result = future.result()
        except Exception as e:
            record = pending.record
            logger.warning(
                "Could not fetch %s for PR #%d in %s: %s",
                name, record.number, record.full_repo_name, e,
            )
            return
        apply(pending.enrichment, result)
