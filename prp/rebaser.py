"""
Local rebase of a single pull request.

Drives git in the developer's clone of the repository:

    validate path -> find remotes -> detect local changes -> fetch both remotes
    -> stash (if dirty) -> save branch -> checkout temporary branch
    -> reset to the fork's branch -> rebase onto the target -> force push
    -> checkout original branch -> delete temporary branch -> pop stash

Any failure before the stash leaves the working copy untouched. Once the
stash or the temporary branch exists, the matching cleanup always runs, and
cleanup problems are reported as warnings without replacing the result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .git import CommandResult, CommandRunner
from .pull_request import PullRequestRecord

logger = logging.getLogger(__name__)

TEMP_BRANCH_PREFIX = "prp-"
# git exits with 128 for fatal errors such as "branch already exists" or a detached HEAD
GIT_FATAL_RETURNCODE = 128


class RebaseError(Exception):
    """A rebase step failed. detail holds git's own diagnostic output."""

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail.strip()

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}\n{self.detail}"
        return self.message


class PathNotConfigured(RebaseError):
    pass


class PathMissing(RebaseError):
    pass


class NotAGitRepository(RebaseError):
    pass


class RemoteNotFound(RebaseError):
    def __init__(self, which: str, message: str, detail: str = ""):
        super().__init__(message, detail)
        self.which = which  # "owned" or "upstream"


class RemoteListFailure(RebaseError):
    pass


class LocalChangeDetectionFailure(RebaseError):
    pass


class StashFailure(RebaseError):
    pass


class FetchFailure(RebaseError):
    def __init__(self, remote: str, message: str, detail: str = ""):
        super().__init__(message, detail)
        self.remote = remote


class BranchReadFailure(RebaseError):
    pass


class NoBranchCheckedOut(RebaseError):
    pass


class TempBranchExists(RebaseError):
    pass


class TempBranchCreateFailure(RebaseError):
    pass


class ResetFailure(RebaseError):
    pass


class RebaseConflict(RebaseError):
    pass


class PushFailure(RebaseError):
    pass


class RebaseCancelled(RebaseError):
    pass


@dataclass
class RebaseWorkingState:
    """Everything one rebase attempt needs to undo its own changes."""

    local_path: str
    owned_remote: str
    upstream_remote: str
    original_branch: str = ""
    temp_branch: str = ""
    had_local_changes: bool = False


def temp_branch_name(branch: str) -> str:
    return f"{TEMP_BRANCH_PREFIX}{branch}"


def parse_remotes(output: str) -> dict[str, list[str]]:
    """
    Map "<url> (fetch)" / "<url> (push)" to the remote names using it.

    Input is the output of ``git remote -v``: "<name>\\t<url> (<direction>)".
    """
    remotes: dict[str, list[str]] = {}
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 2:
            continue
        name, target = parts
        names = remotes.setdefault(target.strip(), [])
        if name not in names:
            names.append(name)
    return remotes


def _branch_from_ref(output: str) -> str:
    return output.replace("refs/heads/", "").replace("\n", "").strip()


class Rebaser:
    """Rebases one pull request in its local clone and pushes it to the fork."""

    def __init__(
        self,
        runner: CommandRunner,
        error_sink: Callable[[str], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.runner = runner
        self.error_sink = error_sink or logger.warning
        self.cancel_event = cancel_event

    def rebase(self, pr: PullRequestRecord, local_path: str | None = None) -> None:
        """
        Rebase a pull request's branch onto its target and force push it.

        Args:
            pr: The pull request to rebase
            local_path: Clone to work in; defaults to the record's local_path

        Raises:
            RebaseError: a subclass naming the step that failed
        """
        if local_path is None:
            local_path = pr.local_path

        path = self._validate_local_path(pr, local_path)
        self._checkpoint()

        logger.info("Analyzing remotes")
        owned_remote, upstream_remote = self._discover_remotes(path, pr)

        logger.info("Checking for local changes")
        state = RebaseWorkingState(
            local_path=path,
            owned_remote=owned_remote,
            upstream_remote=upstream_remote,
            had_local_changes=self._detect_local_changes(path),
        )

        self._fetch(path, owned_remote)
        self._fetch(path, upstream_remote)
        self._checkpoint()

        if state.had_local_changes:
            logger.info("Local changes found... stashing")
            result = self._git(path, "stash")
            if not result.ok:
                raise StashFailure(f"Unable to stash changes in {path}", result.stderr)

        try:
            self._checkpoint()
            state.original_branch = self._current_branch(path)
            state.temp_branch = self._checkout_temp_branch(path, pr.head_branch)
            try:
                self._rebase_temp_branch(state, pr)
            finally:
                self._clean_up(state)
        finally:
            if state.had_local_changes:
                self._pop_stash(path)

    def _checkpoint(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RebaseCancelled("Rebase cancelled")

    def _git(self, path: str, *args: str) -> CommandResult:
        return self.runner.run(path, *args)

    def _validate_local_path(self, pr: PullRequestRecord, local_path: str | None) -> str:
        logger.info("Requesting repo data from config")
        if not local_path:
            raise PathNotConfigured(f"Path was not set for repo: {pr.full_repo_name}")

        path = Path(local_path).expanduser()
        if not path.exists():
            raise PathMissing(f"Path does not exist: {local_path}")

        if not (path / ".git").exists():
            raise NotAGitRepository(f"Path is not a git repo: {local_path}")

        return str(path)

    def _discover_remotes(self, path: str, pr: PullRequestRecord) -> tuple[str, str]:
        result = self._git(path, "remote", "-v")
        if not result.ok:
            raise RemoteListFailure(f"Unable to analyze remotes in {path}", result.output)

        remotes = parse_remotes(result.stdout)
        owned = self._match_remote(path, remotes, pr.head_ssh_url, "push", "owned")
        upstream = self._match_remote(path, remotes, pr.base_ssh_url, "fetch", "upstream")
        return owned, upstream

    def _match_remote(
        self,
        path: str,
        remotes: dict[str, list[str]],
        url: str,
        direction: str,
        which: str,
    ) -> str:
        names = remotes.get(f"{url} ({direction})", [])
        if not url or not names:
            raise RemoteNotFound(which, f"No remote exists in {path} that points to {url}")
        if len(names) > 1:
            raise RemoteNotFound(
                which,
                f"Multiple remotes in {path} point to {url}: {', '.join(names)}",
            )
        return names[0]

    def _detect_local_changes(self, path: str) -> bool:
        result = self._git(path, "diff-index", "--quiet", "HEAD")
        if result.returncode == 0:
            return False
        if result.returncode == 1:
            return True
        raise LocalChangeDetectionFailure(f"Unable to detect local changes in {path}", result.stderr)

    def _fetch(self, path: str, remote: str) -> None:
        logger.info("Fetching from remote: %s", remote)
        result = self._git(path, "fetch", remote)
        if not result.ok:
            raise FetchFailure(remote, f"Unable to fetch code from {remote}", result.stderr)

    def _current_branch(self, path: str) -> str:
        logger.info("Saving current branch name")
        result = self._git(path, "symbolic-ref", "HEAD")
        if result.ok:
            branch = _branch_from_ref(result.stdout)
        elif result.returncode == GIT_FATAL_RETURNCODE:
            # Detached HEAD: come back to the commit itself
            detached = self._git(path, "rev-parse", "HEAD")
            if not detached.ok:
                raise NoBranchCheckedOut(f"No branch checked out in {path}", detached.output)
            branch = detached.stdout.strip()
        else:
            raise BranchReadFailure(f"Unable to get current branch name in {path}", result.output)

        logger.info("Current branch name is %s", branch)
        return branch

    def _checkout_temp_branch(self, path: str, branch: str) -> str:
        temp_branch = temp_branch_name(branch)
        logger.info("Checking out temporary branch: %s", temp_branch)
        result = self._git(path, "checkout", "-b", temp_branch)
        if result.returncode == GIT_FATAL_RETURNCODE:
            raise TempBranchExists(f"Branch {temp_branch} already exists", result.stderr)
        if not result.ok:
            raise TempBranchCreateFailure(
                f"Unable to checkout temporary branch {temp_branch} in {path}",
                result.stderr,
            )
        return temp_branch

    def _rebase_temp_branch(self, state: RebaseWorkingState, pr: PullRequestRecord) -> None:
        path = state.local_path
        owned_branch = f"{state.owned_remote}/{pr.head_branch}"
        upstream_branch = f"{state.upstream_remote}/{pr.target_branch}"

        self._checkpoint()
        logger.info("Resetting code to %s", owned_branch)
        result = self._git(path, "reset", "--hard", owned_branch)
        if not result.ok:
            raise ResetFailure(f"Unable to reset the code to {owned_branch}", result.stderr)

        self._checkpoint()
        logger.info("Rebasing against %s", upstream_branch)
        result = self._git(path, "rebase", upstream_branch)
        if not result.ok:
            abort = self._git(path, "rebase", "--abort")
            if not abort.ok:
                self.error_sink(
                    f"Could not abort rebase PR #{pr.number} in {pr.full_repo_name} "
                    f"because: {abort.stderr.strip()}"
                )
            raise RebaseConflict(
                f"Unable to rebase against {upstream_branch}, there may be a conflict",
                result.stderr,
            )

        self._checkpoint()
        logger.info("Pushing to %s", owned_branch)
        result = self._git(
            path, "push", state.owned_remote, f"{state.temp_branch}:{pr.head_branch}", "--force"
        )
        if not result.ok:
            raise PushFailure(f"Unable to push to {owned_branch}", result.stderr)

    def _clean_up(self, state: RebaseWorkingState) -> None:
        path = state.local_path

        logger.info("Going back to branch %s", state.original_branch)
        result = self._git(path, "checkout", state.original_branch)
        if not result.ok:
            self._warn(result, f"Could not go back to branch {state.original_branch} in {path}")

        logger.info("Deleting temporary branch %s", state.temp_branch)
        result = self._git(path, "branch", "-D", state.temp_branch)
        if not result.ok:
            self._warn(result, f"Could not delete temporary branch {state.temp_branch} in {path}")

    def _pop_stash(self, path: str) -> None:
        logger.info("Popping the stash")
        result = self._git(path, "stash", "pop")
        if not result.ok:
            self._warn(result, f"Could not pop stash in {path}")

    def _warn(self, result: CommandResult, message: str) -> None:
        detail = result.stderr.strip()
        if detail:
            self.error_sink(f"{detail}\nWarning: {message}")
        else:
            self.error_sink(f"Warning: {message}")
