"""
Table rendering for pull request records.
"""

from __future__ import annotations

from typing import Iterable

from .pull_request import PullRequestRecord


HEADERS = ["Repo", "ID", "Title", "Owner", "Branch", "Target", "+1", "UTD", "Status", "Review", "Labels"]
SHORT_TITLE_LENGTH = 10


def bool_to_string(value: bool) -> str:
    return "Y" if value else "N"


def shorten_label(label: str) -> str:
    """Abbreviate "needs-code-review" to "NCR"."""
    return "".join(part[0].upper() for part in label.split("-") if part)


def build_status(contexts: dict[str, bool]) -> str:
    """One Y/N per build context, ordered by context name."""
    return "/".join(bool_to_string(contexts[key]) for key in sorted(contexts))


def sort_records(records: Iterable[PullRequestRecord]) -> list[PullRequestRecord]:
    return sorted(records, key=lambda r: (r.repo_name, r.number))


def format_row(record: PullRequestRecord, verbose: bool = False) -> list[str]:
    title = record.title
    labels = list(record.labels)
    if not verbose:
        title = title[:SHORT_TITLE_LENGTH]
        labels = [shorten_label(label) for label in labels]

    return [
        record.repo_name,
        str(record.number),
        title,
        record.author,
        record.head_branch,
        record.target_branch,
        str(record.approvals),
        bool_to_string(record.is_rebased),
        build_status(record.build_status),
        bool_to_string(record.needs_viewer_approval),
        ",".join(labels),
    ]


def format_table(records: Iterable[PullRequestRecord], verbose: bool = False) -> str:
    """Render visible records as a "|"-separated table sorted by repo and number."""
    rows = [HEADERS] + [
        format_row(record, verbose)
        for record in sort_records(records)
        if record.visible
    ]
    widths = [max(len(row[i]) for row in rows) for i in range(len(HEADERS))]

    lines = []
    for row in rows:
        cells = [cell.ljust(widths[i]) for i, cell in enumerate(row[:-1])]
        cells.append(row[-1])
        lines.append("|".join(cells))
    return "\n".join(lines) + "\n"
