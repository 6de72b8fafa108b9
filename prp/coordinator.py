"""
Runs local rebases for a stream of pull requests.

Pull requests in different clones are rebased in parallel. Pull requests
that share a clone are queued per resolved clone path and rebased one after
another by a single worker, since each rebase switches branches and stashes
in that working copy. A queued pull request never occupies a worker, so a
busy clone cannot hold back an idle one.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable

from .pull_request import PullRequestRecord
from .rebaser import RebaseError, Rebaser

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


def clone_key(local_path: str | None) -> str:
    """Normalize a clone path so aliases of one directory share a queue."""
    if not local_path:
        return ""
    return str(Path(local_path).expanduser().resolve())


class RebaseCoordinator:
    """Rebases many pull requests, one at a time per local clone."""

    def __init__(
        self,
        rebaser: Rebaser,
        max_workers: int = DEFAULT_MAX_WORKERS,
        error_sink: Callable[[str], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.rebaser = rebaser
        self.max_workers = max(max_workers, 1)
        self.error_sink = error_sink or logger.error
        self.cancel_event = cancel_event
        # A key is present while a worker is draining that clone's queue
        self._queues: dict[str, deque[PullRequestRecord]] = {}
        self._queues_guard = threading.Lock()
        self._report_lock = threading.Lock()

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def rebase_all(
        self,
        records: Iterable[PullRequestRecord],
        pull_request_number: int | None = None,
    ) -> bool:
        """
        Rebase every record, optionally only the one with a given number.

        Failures are reported to the error sink as they happen and do not
        stop the remaining rebases.

        Returns:
            True if every attempted rebase succeeded
        """
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="prp-rebase") as executor:
            futures = []
            try:
                for record in records:
                    if self._cancelled():
                        break
                    if pull_request_number and record.number != pull_request_number:
                        continue
                    key = self._enqueue(record)
                    if key is not None:
                        futures.append(executor.submit(self._drain, key))

                results = [ok for future in as_completed(futures) for ok in future.result()]
            except KeyboardInterrupt:
                # Running rebases stop at their next step and still clean up
                if self.cancel_event is not None:
                    self.cancel_event.set()
                for future in futures:
                    future.cancel()
                with self._queues_guard:
                    self._queues.clear()
                raise

        return all(results)

    def _enqueue(self, record: PullRequestRecord) -> str | None:
        """Queue a record behind its clone. Returns the key when no worker drains it yet."""
        key = clone_key(record.local_path)
        with self._queues_guard:
            queue = self._queues.get(key)
            if queue is not None:
                queue.append(record)
                return None
            self._queues[key] = deque([record])
            return key

    def _drain(self, key: str) -> list[bool]:
        results = []
        while True:
            with self._queues_guard:
                queue = self._queues.get(key)
                if not queue or self._cancelled():
                    self._queues.pop(key, None)
                    return results
                record = queue.popleft()
            results.append(self._rebase_one(record))

    def _rebase_one(self, record: PullRequestRecord) -> bool:
        logger.info("Rebasing PR #%d in %s", record.number, record.full_repo_name)
        try:
            self.rebaser.rebase(record)
        except RebaseError as e:
            self._report_failure(record, e)
            return False
        except Exception as e:
            logger.debug("Unexpected failure rebasing PR #%d", record.number, exc_info=True)
            self._report_failure(record, e)
            return False
        return True

    def _report_failure(self, record: PullRequestRecord, error: Exception) -> None:
        with self._report_lock:
            self.error_sink(
                f"Could not rebase PR #{record.number} in "
                f"{record.repo_owner}/{record.repo_name} because: {error}"
            )
