from __future__ import annotations

import threading

import pytest

from prp.git import CommandResult
from prp.pull_request import PullRequestRecord
from prp.rebaser import (
    BranchReadFailure,
    FetchFailure,
    LocalChangeDetectionFailure,
    NoBranchCheckedOut,
    NotAGitRepository,
    PathMissing,
    PathNotConfigured,
    PushFailure,
    RebaseCancelled,
    RebaseConflict,
    Rebaser,
    RemoteListFailure,
    RemoteNotFound,
    ResetFailure,
    StashFailure,
    TempBranchCreateFailure,
    TempBranchExists,
    parse_remotes,
    temp_branch_name,
)

OWNED_URL = "git@github.com:me/widgets.git"
UPSTREAM_URL = "git@github.com:acme/widgets.git"

REMOTES = (
    f"origin\t{OWNED_URL} (fetch)\n"
    f"origin\t{OWNED_URL} (push)\n"
    f"upstream\t{UPSTREAM_URL} (fetch)\n"
    f"upstream\t{UPSTREAM_URL} (push)\n"
)


class FakeRunner:
    """Scripted git: answers by command prefix and records every call."""

    def __init__(self, overrides=None, on_call=None):
        self.calls = []
        self.overrides = overrides or {}
        self.on_call = on_call

    def run(self, cwd, *args):
        self.calls.append(args)
        if self.on_call:
            self.on_call(args)
        for prefix, result in self.overrides.items():
            if args[:len(prefix)] == prefix:
                returncode, stdout, stderr = result
                return CommandResult(["git", *args], returncode, stdout, stderr)
        return CommandResult(["git", *args], 0, self._default_stdout(args))

    @staticmethod
    def _default_stdout(args):
        if args == ("remote", "-v"):
            return REMOTES
        if args == ("symbolic-ref", "HEAD"):
            return "refs/heads/work\n"
        return ""


@pytest.fixture
def clone(tmp_path):
    (tmp_path / ".git").mkdir()
    return str(tmp_path)


def _record(local_path):
    return PullRequestRecord(
        repo_owner="acme",
        repo_name="widgets",
        number=7,
        title="Add widgets",
        author="me",
        head_branch="feature",
        target_branch="main",
        head_label="me:feature",
        base_label="acme:main",
        head_sha="abc123",
        head_ssh_url=OWNED_URL,
        base_ssh_url=UPSTREAM_URL,
        local_path=local_path,
    )


CLEAN_RUN = [
    ("remote", "-v"),
    ("diff-index", "--quiet", "HEAD"),
    ("fetch", "origin"),
    ("fetch", "upstream"),
    ("symbolic-ref", "HEAD"),
    ("checkout", "-b", "prp-feature"),
    ("reset", "--hard", "origin/feature"),
    ("rebase", "upstream/main"),
    ("push", "origin", "prp-feature:feature", "--force"),
    ("checkout", "work"),
    ("branch", "-D", "prp-feature"),
]


def test_temp_branch_name():
    assert temp_branch_name("feature") == "prp-feature"


def test_parse_remotes_groups_by_url_and_direction():
    remotes = parse_remotes(REMOTES + f"mirror\t{UPSTREAM_URL} (fetch)\n")
    assert remotes[f"{OWNED_URL} (push)"] == ["origin"]
    assert remotes[f"{UPSTREAM_URL} (fetch)"] == ["upstream", "mirror"]


def test_rebase_clean_working_copy(clone):
    runner = FakeRunner()
    Rebaser(runner).rebase(_record(clone))
    assert runner.calls == CLEAN_RUN


def test_rebase_dirty_working_copy_stashes_and_pops(clone):
    runner = FakeRunner({("diff-index",): (1, "", "")})
    Rebaser(runner).rebase(_record(clone))

    assert runner.calls[:4] == CLEAN_RUN[:4]
    assert runner.calls[4] == ("stash",)
    assert runner.calls[5:-1] == CLEAN_RUN[4:]
    assert runner.calls[-1] == ("stash", "pop")


def test_rebase_conflict_aborts_and_cleans_up(clone):
    errors = []
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("rebase", "upstream/main"): (1, "", "CONFLICT (content): widgets.py"),
    })

    with pytest.raises(RebaseConflict) as excinfo:
        Rebaser(runner, error_sink=errors.append).rebase(_record(clone))

    assert "Unable to rebase against upstream/main, there may be a conflict" in str(excinfo.value)
    assert "CONFLICT" in str(excinfo.value)
    assert runner.calls[-4:] == [
        ("rebase", "--abort"),
        ("checkout", "work"),
        ("branch", "-D", "prp-feature"),
        ("stash", "pop"),
    ]
    assert ("push", "origin", "prp-feature:feature", "--force") not in runner.calls
    assert errors == []


def test_rebase_conflict_reports_failed_abort(clone):
    errors = []
    runner = FakeRunner({
        ("rebase", "upstream/main"): (1, "", "conflict"),
        ("rebase", "--abort"): (128, "", "no rebase in progress"),
    })

    with pytest.raises(RebaseConflict):
        Rebaser(runner, error_sink=errors.append).rebase(_record(clone))

    assert errors == ["Could not abort rebase PR #7 in acme/widgets because: no rebase in progress"]
    assert runner.calls[-2:] == [("checkout", "work"), ("branch", "-D", "prp-feature")]


def test_rebase_missing_owned_remote(clone):
    runner = FakeRunner({("remote", "-v"): (0, f"upstream\t{UPSTREAM_URL} (fetch)\n", "")})

    with pytest.raises(RemoteNotFound) as excinfo:
        Rebaser(runner).rebase(_record(clone))

    assert excinfo.value.which == "owned"
    assert runner.calls == [("remote", "-v")]


def test_rebase_ambiguous_upstream_remote(clone):
    runner = FakeRunner({("remote", "-v"): (0, REMOTES + f"mirror\t{UPSTREAM_URL} (fetch)\n", "")})

    with pytest.raises(RemoteNotFound) as excinfo:
        Rebaser(runner).rebase(_record(clone))

    assert excinfo.value.which == "upstream"


def test_rebase_path_not_configured():
    runner = FakeRunner()
    with pytest.raises(PathNotConfigured, match="Path was not set for repo: acme/widgets"):
        Rebaser(runner).rebase(_record(None))
    assert runner.calls == []


def test_rebase_path_missing(tmp_path):
    with pytest.raises(PathMissing):
        Rebaser(FakeRunner()).rebase(_record(str(tmp_path / "gone")))


def test_rebase_path_not_a_git_repo(tmp_path):
    with pytest.raises(NotAGitRepository):
        Rebaser(FakeRunner()).rebase(_record(str(tmp_path)))


def test_rebase_local_change_detection_failure(clone):
    runner = FakeRunner({("diff-index",): (128, "", "fatal: bad revision 'HEAD'")})

    with pytest.raises(LocalChangeDetectionFailure):
        Rebaser(runner).rebase(_record(clone))

    assert runner.calls[-1] == ("diff-index", "--quiet", "HEAD")


def test_rebase_fetch_failure_leaves_no_stash(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("fetch", "upstream"): (1, "", "Could not resolve host"),
    })

    with pytest.raises(FetchFailure) as excinfo:
        Rebaser(runner).rebase(_record(clone))

    assert excinfo.value.remote == "upstream"
    assert "Unable to fetch code from upstream" in str(excinfo.value)
    assert ("stash",) not in runner.calls
    assert ("stash", "pop") not in runner.calls


def test_rebase_temp_branch_exists(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("checkout", "-b"): (128, "", "fatal: A branch named 'prp-feature' already exists."),
    })

    with pytest.raises(TempBranchExists):
        Rebaser(runner).rebase(_record(clone))

    # The existing branch belongs to someone else: never deleted
    assert ("branch", "-D", "prp-feature") not in runner.calls
    assert runner.calls[-1] == ("stash", "pop")


def test_rebase_detached_head_returns_to_commit(clone):
    runner = FakeRunner({
        ("symbolic-ref",): (128, "", "fatal: ref HEAD is not a symbolic ref"),
        ("rev-parse", "HEAD"): (0, "deadbeef\n", ""),
    })

    Rebaser(runner).rebase(_record(clone))

    assert ("checkout", "deadbeef") in runner.calls


def test_rebase_push_failure_still_cleans_up(clone):
    runner = FakeRunner({("push",): (1, "", "rejected")})

    with pytest.raises(PushFailure):
        Rebaser(runner).rebase(_record(clone))

    assert runner.calls[-2:] == [("checkout", "work"), ("branch", "-D", "prp-feature")]


def test_cleanup_failures_are_warnings(clone):
    errors = []
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("checkout", "work"): (1, "", "error: pathspec 'work'"),
        ("branch", "-D"): (1, "", "error: branch not found"),
        ("stash", "pop"): (1, "", "CONFLICT"),
    })

    Rebaser(runner, error_sink=errors.append).rebase(_record(clone))

    assert len(errors) == 3
    assert all("Warning: Could not" in message for message in errors)
    assert errors[0].startswith("error: pathspec 'work'")
    # Branch deletion is attempted even after the checkout failed
    assert runner.calls[-2:] == [("branch", "-D", "prp-feature"), ("stash", "pop")]


def test_second_run_after_success_repeats_same_steps(clone):
    runner = FakeRunner()
    rebaser = Rebaser(runner)

    rebaser.rebase(_record(clone))
    rebaser.rebase(_record(clone))

    assert runner.calls == CLEAN_RUN + CLEAN_RUN


def test_cancel_before_start(clone):
    cancel = threading.Event()
    cancel.set()
    runner = FakeRunner()

    with pytest.raises(RebaseCancelled):
        Rebaser(runner, cancel_event=cancel).rebase(_record(clone))

    assert runner.calls == []


def test_cancel_mid_rebase_still_cleans_up(clone):
    cancel = threading.Event()

    def cancel_after_reset(args):
        if args[:1] == ("reset",):
            cancel.set()

    runner = FakeRunner({("diff-index",): (1, "", "")}, on_call=cancel_after_reset)

    with pytest.raises(RebaseCancelled):
        Rebaser(runner, cancel_event=cancel).rebase(_record(clone))

    assert ("rebase", "upstream/main") not in runner.calls
    assert runner.calls[-3:] == [
        ("checkout", "work"),
        ("branch", "-D", "prp-feature"),
        ("stash", "pop"),
    ]


def test_explicit_local_path_overrides_record(clone):
    runner = FakeRunner()
    Rebaser(runner).rebase(_record(None), local_path=clone)
    assert runner.calls == CLEAN_RUN


def test_remote_list_failure(clone):
    runner = FakeRunner({("remote", "-v"): (1, "", "fatal: not a git repository")})

    with pytest.raises(RemoteListFailure) as excinfo:
        Rebaser(runner).rebase(_record(clone))

    assert "fatal: not a git repository" in str(excinfo.value)
    assert runner.calls == [("remote", "-v")]


def test_stash_failure_creates_nothing(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("stash",): (1, "", "error: could not write index"),
    })

    with pytest.raises(StashFailure, match="Unable to stash changes"):
        Rebaser(runner).rebase(_record(clone))

    assert runner.calls[-1] == ("stash",)
    assert not any(call[:2] == ("checkout", "-b") for call in runner.calls)
    assert ("stash", "pop") not in runner.calls


def test_branch_read_failure_pops_stash(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("symbolic-ref",): (1, "", "error: cannot read HEAD"),
    })

    with pytest.raises(BranchReadFailure):
        Rebaser(runner).rebase(_record(clone))

    assert runner.calls[-2:] == [("symbolic-ref", "HEAD"), ("stash", "pop")]


def test_no_branch_checked_out(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("symbolic-ref",): (128, "", "fatal: ref HEAD is not a symbolic ref"),
        ("rev-parse",): (128, "", "fatal: ambiguous argument 'HEAD'"),
    })

    with pytest.raises(NoBranchCheckedOut):
        Rebaser(runner).rebase(_record(clone))

    assert not any(call[:2] == ("checkout", "-b") for call in runner.calls)
    assert runner.calls[-1] == ("stash", "pop")


def test_temp_branch_create_failure(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("checkout", "-b"): (1, "", "error: cannot lock ref"),
    })

    with pytest.raises(TempBranchCreateFailure):
        Rebaser(runner).rebase(_record(clone))

    assert ("branch", "-D", "prp-feature") not in runner.calls
    assert runner.calls[-2:] == [("checkout", "-b", "prp-feature"), ("stash", "pop")]


def test_reset_failure_still_cleans_up(clone):
    runner = FakeRunner({
        ("diff-index",): (1, "", ""),
        ("reset",): (128, "", "fatal: ambiguous argument 'origin/feature'"),
    })

    with pytest.raises(ResetFailure, match="Unable to reset the code to origin/feature"):
        Rebaser(runner).rebase(_record(clone))

    assert ("rebase", "upstream/main") not in runner.calls
    assert runner.calls[-4:] == [
        ("reset", "--hard", "origin/feature"),
        ("checkout", "work"),
        ("branch", "-D", "prp-feature"),
        ("stash", "pop"),
    ]
