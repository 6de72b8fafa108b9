"""
Filters over the aggregated pull request stream.
"""

from __future__ import annotations

from typing import Iterable, Iterator

from .pull_request import PullRequestRecord


def matches_repo_filter(record: PullRequestRecord, owner: str | None, repos: Iterable[str]) -> bool:
    """Check the author and "owner/name" allow-list. An empty allow-list passes everything."""
    if owner and record.author != owner:
        return False

    repos = list(repos)
    if not repos:
        return True
    return record.full_repo_name in repos


def filter_pull_requests(
    records: Iterable[PullRequestRecord],
    owner: str | None = None,
    repos: Iterable[str] = (),
    needs_rebase: bool = False,
) -> Iterator[PullRequestRecord]:
    """Lazily narrow a record stream by author, repository and rebase state."""
    repos = list(repos)
    for record in records:
        if not matches_repo_filter(record, owner, repos):
            continue
        if needs_rebase and record.is_rebased:
            continue
        yield record
