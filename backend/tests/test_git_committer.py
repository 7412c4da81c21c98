from __future__ import annotations

import threading
from pathlib import Path

from snapshot.core.errors import GitCommandError
from snapshot.core.git_committer import GitSnapshotConfig, GitSnapshotter
from tracker.core.state import BlockRecord
from tracker.core.store import DatasetStore


class FakeGit:
    def __init__(self, *, staged=True, fail=()):
        self.staged = staged
        self.fail = set(fail)
        self.calls = []
        self.cwds = []

    def __call__(self, cmd, cwd, timeout):
        self.calls.append((cmd, timeout))
        self.cwds.append(cwd)
        verb = cmd[1]
        if verb in self.fail:
            return 1, f"fatal: {verb} failed"
        if verb == "diff":
            return (1 if self.staged else 0), ""
        return 0, ""

    @property
    def verbs(self):
        return [cmd[1] for cmd, _ in self.calls]


def _snapshotter(csv_path, git, **kwargs) -> GitSnapshotter:
    return GitSnapshotter(GitSnapshotConfig(csv_file=csv_path, **kwargs), runner=git, background=False)


def test_commit_and_push_with_templated_message(csv_path):
    git = FakeGit()
    assert _snapshotter(csv_path, git).commit(840123) is True

    assert git.verbs == ["add", "diff", "commit", "push"]
    commit_cmd = git.calls[2][0]
    assert "Update Bitcoin bitmap data - Block 840123" in commit_cmd
    push_cmd, push_timeout = git.calls[3]
    assert push_cmd == ["git", "push", "origin", "main"]
    assert push_timeout == 10.0


def test_nothing_staged_means_no_commit(csv_path):
    git = FakeGit(staged=False)
    assert _snapshotter(csv_path, git).commit(1) is False
    assert git.verbs == ["add", "diff"]


def test_push_can_be_disabled(csv_path):
    git = FakeGit()
    _snapshotter(csv_path, git, push=False, message_template="bitmap {blockNumber}").commit(7)
    assert git.verbs == ["add", "diff", "commit"]
    assert "bitmap 7" in git.calls[2][0]


def test_push_failure_still_counts_as_committed(csv_path):
    git = FakeGit(fail={"push"})
    assert _snapshotter(csv_path, git).commit(5) is True


def test_failures_never_reach_the_store(csv_path):
    git = FakeGit(fail={"add"})
    store = DatasetStore(csv_path)
    store.open()
    snap = _snapshotter(csv_path, git)
    store.subscribe(snap.on_append)

    store.append(BlockRecord(block_number=840000, inscription_id="abci0"))

    assert store.lookup(840000) is not None
    assert git.verbs == ["add"]


def test_background_worker_runs_after_append(csv_path):
    git = FakeGit()
    snap = GitSnapshotter(GitSnapshotConfig(csv_file=csv_path, push=False), runner=git)
    future = snap.on_append(BlockRecord(block_number=840001, inscription_id="abci0"))
    assert future.result(timeout=5) is True
    snap.close()
    assert git.verbs == ["add", "diff", "commit"]


def test_git_command_error_message():
    err = GitCommandError(["git", "push"], 128, "fatal: no remote")
    assert "git push failed (128)" in str(err)


def test_nested_relative_csv_path_resolves_against_repo(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "data").mkdir()
    git = FakeGit()
    snap = GitSnapshotter(GitSnapshotConfig(csv_file=Path("data/bitmap_data.csv"), push=False), runner=git, background=False)

    snap.commit(840000)

    expected = str((tmp_path / "data" / "bitmap_data.csv").resolve())
    assert git.calls[0][0] == ["git", "add", expected]
    assert git.calls[1][0][-1] == expected
    assert git.calls[2][0][-1] == expected
    assert set(git.cwds) == {(tmp_path / "data").resolve()}


class GatedGit(FakeGit):
    """Blocks inside the first `git add` until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, cmd, cwd, timeout):
        if cmd[1] == "add" and not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=5)
        return super().__call__(cmd, cwd, timeout)


def test_appends_during_a_commit_collapse_into_latest(csv_path):
    git = GatedGit()
    snap = GitSnapshotter(GitSnapshotConfig(csv_file=csv_path, push=False), runner=git)

    first = snap.on_append(BlockRecord(block_number=1, inscription_id="a"))
    assert git.entered.wait(timeout=5)
    assert snap.on_append(BlockRecord(block_number=2, inscription_id="b")) is first
    assert snap.on_append(BlockRecord(block_number=3, inscription_id="c")) is first
    git.release.set()

    assert first.result(timeout=5) is True
    snap.close()

    messages = [cmd[3] for cmd, _ in git.calls if cmd[1] == "commit"]
    assert messages == [
        "Update Bitcoin bitmap data - Block 1",
        "Update Bitcoin bitmap data - Block 3",
    ]
