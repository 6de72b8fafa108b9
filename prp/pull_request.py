"""
Pull request records and the pure functions that enrich them.

A record is built once per open pull request from the listing call, then
folded together with four independently fetched partial results (commit
comparison, approvals, labels, build statuses) into its final form.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable

from .config import TrackedRepo
from .github import GitHubComment, GitHubPullRequest, GitHubReview, GitHubStatus


APPROVAL_MARKERS = (":+1:", ":thumbsup:", "\U0001F44D", "LGTM")
APPROVED_REVIEW_STATE = "APPROVED"
SUCCESS_STATE = "success"


@dataclass(frozen=True)
class PullRequestRecord:
    """An open pull request with its review, build and rebase status."""

    repo_owner: str
    repo_name: str
    number: int
    title: str
    author: str
    head_branch: str
    target_branch: str
    head_label: str
    base_label: str
    head_sha: str
    head_ssh_url: str
    base_ssh_url: str
    local_path: str | None = None
    ignored_builds: frozenset[str] = frozenset()
    approvals: int = 0
    is_rebased: bool = False
    needs_viewer_approval: bool = True
    build_status: dict[str, bool] = field(default_factory=dict)
    labels: tuple[str, ...] = ()
    visible: bool = True

    @property
    def full_repo_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @classmethod
    def from_github(
        cls,
        repo: TrackedRepo,
        pr: GitHubPullRequest,
        viewer: str,
    ) -> "PullRequestRecord":
        return cls(
            repo_owner=repo.owner,
            repo_name=repo.name,
            number=pr.number,
            title=pr.title,
            author=pr.author,
            head_branch=pr.head_ref,
            target_branch=pr.base_ref,
            head_label=pr.head_label,
            base_label=pr.base_label,
            head_sha=pr.head_sha,
            head_ssh_url=pr.head_ssh_url,
            base_ssh_url=pr.base_ssh_url,
            local_path=repo.local_path,
            ignored_builds=frozenset(repo.ignored_builds),
            needs_viewer_approval=viewer != pr.author,
        )


@dataclass
class Enrichment:
    """Partial results gathered for one pull request. None means the call failed."""

    ahead_by: int | None = None
    approvers: set[str] = field(default_factory=set)
    labels: list[str] = field(default_factory=list)
    build_status: dict[str, bool] = field(default_factory=dict)


def is_approval_comment(body: str) -> bool:
    return any(marker in body for marker in APPROVAL_MARKERS)


def approvers_from_comments(comments: Iterable[GitHubComment]) -> set[str]:
    return {c.author for c in comments if c.author and is_approval_comment(c.body)}


def approvers_from_reviews(reviews: Iterable[GitHubReview]) -> set[str]:
    return {r.author for r in reviews if r.author and r.state == APPROVED_REVIEW_STATE}


def build_status(statuses: Iterable[GitHubStatus], ignored: Iterable[str] = ()) -> dict[str, bool]:
    """Map each build context to whether any of its statuses succeeded."""
    ignored_set = set(ignored)
    result: dict[str, bool] = {}
    for status in statuses:
        if status.context in ignored_set:
            continue
        result.setdefault(status.context, False)
        if status.state == SUCCESS_STATE:
            result[status.context] = True
    return result


def unique_labels(labels: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(labels))


def fold_enrichment(
    record: PullRequestRecord,
    enrichment: Enrichment,
    viewer: str,
    hide_rebased: bool = False,
) -> PullRequestRecord:
    """
    Combine a base record and its partial results into the final record.

    With hide_rebased, records already up to date with their target are
    marked invisible; presenters skip them.
    """
    needs_approval = record.needs_viewer_approval and viewer not in enrichment.approvers
    is_rebased = enrichment.ahead_by == 0
    return replace(
        record,
        approvals=len(enrichment.approvers),
        is_rebased=is_rebased,
        visible=not (hide_rebased and is_rebased),
        needs_viewer_approval=needs_approval,
        build_status={
            context: passed
            for context, passed in enrichment.build_status.items()
            if context not in record.ignored_builds
        },
        labels=unique_labels(enrichment.labels),
    )
