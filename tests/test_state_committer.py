from __future__ import annotations

import json
from pathlib import Path

import pytest

from gitclaw.config import RuntimeConfig
from gitclaw.models import MappingRecord
from gitclaw.observability import configure_logging
from gitclaw.session_store import SessionStore
from gitclaw.shell import CommandError
from gitclaw.state_committer import CommitFailure, StateCommitter


class FakeHistory:
    def __init__(
        self,
        *,
        push_results: list[bool],
        staged: tuple[str, ...] = ("a",),
        rebase_error: bool = False,
        stage_error: bool = False,
    ) -> None:
        self.push_results = push_results
        self.staged = staged
        self.rebase_error = rebase_error
        self.stage_error = stage_error
        self.calls: list[tuple[str, object]] = []

    def stage(self, paths: tuple[Path, ...], *, all_changes: bool) -> None:
        self.calls.append(("stage", (paths, all_changes)))
        if self.stage_error:
            raise CommandError("index.lock exists")

    def list_staged_files(self) -> tuple[str, ...]:
        return self.staged

    def commit(self, message: str) -> None:
        self.calls.append(("commit", message))

    def push(self, branch: str) -> bool:
        self.calls.append(("push", branch))
        return self.push_results.pop(0)

    def rebase_onto_remote(self, branch: str) -> None:
        self.calls.append(("rebase", branch))
        if self.rebase_error:
            raise CommandError("conflict")


def _setup(
    tmp_path: Path, history: FakeHistory, **runtime_overrides: object
) -> tuple[StateCommitter, SessionStore, Path, list[float]]:
    runtime = RuntimeConfig(install_root=tmp_path / ".gitclaw", **runtime_overrides)  # type: ignore[arg-type]
    store = SessionStore(runtime, repo_root=tmp_path)
    log_path = store.sessions_dir / "log.jsonl"
    log_path.parent.mkdir(parents=True)
    log_path.write_text('{"role": "user"}\n', encoding="utf-8")
    sleeps: list[float] = []
    committer = StateCommitter(runtime, history=history, store=store, sleep=sleeps.append)
    return committer, store, log_path, sleeps


def _names(history: FakeHistory) -> list[str]:
    return [name for name, _ in history.calls]


def test_commit_pushes_once_when_uncontended(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[True])
    committer, store, log_path, sleeps = _setup(tmp_path, history)
    record = store.make_record(7, log_path)

    result = committer.commit(7, log_path, record, branch="main")

    assert (result.committed, result.attempts) == (True, 1)
    assert _names(history) == ["stage", "commit", "push"]
    assert history.calls[1] == ("commit", "gitclaw: work on issue #7")
    staged_paths, all_changes = history.calls[0][1]  # type: ignore[misc]
    assert staged_paths == (log_path, store.mapping_path(7))
    assert all_changes is True
    assert sleeps == []
    assert store.read_mapping(7) == record


def test_commit_rebases_and_retries_after_rejection(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose="high")
    history = FakeHistory(push_results=[False, False, True])
    committer, store, log_path, sleeps = _setup(tmp_path, history)

    result = committer.commit(7, log_path, store.make_record(7, log_path), branch="trunk")

    assert (result.committed, result.attempts) == (True, 3)
    assert _names(history) == ["stage", "commit", "push", "rebase", "push", "rebase", "push"]
    assert all(arg == "trunk" for name, arg in history.calls if name in {"push", "rebase"})
    assert sleeps == [1.0, 2.0]
    stderr = capsys.readouterr().err
    assert "event=state_commit_retrying" in stderr
    assert "event=state_committed" in stderr
    assert "attempts=3" in stderr


def test_commit_raises_after_exhausting_attempts(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[False, False, False])
    committer, store, log_path, sleeps = _setup(tmp_path, history)

    with pytest.raises(CommitFailure, match="after 3 attempts"):
        committer.commit(7, log_path, store.make_record(7, log_path))

    assert _names(history).count("push") == 3
    assert _names(history).count("rebase") == 2
    assert sleeps == [1.0, 2.0]


def test_commit_backoff_is_capped(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[False] * 4 + [True])
    committer, store, log_path, sleeps = _setup(
        tmp_path,
        history,
        commit_max_attempts=5,
        commit_backoff_seconds=2.0,
        commit_backoff_max_seconds=5.0,
    )

    committer.commit(7, log_path, store.make_record(7, log_path))

    assert sleeps == [2.0, 4.0, 5.0, 5.0]


def test_rebase_failure_does_not_stop_retries(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[False, True], rebase_error=True)
    committer, store, log_path, _ = _setup(tmp_path, history)

    result = committer.commit(7, log_path, store.make_record(7, log_path))

    assert result.attempts == 2


def test_commit_skips_empty_commit_but_still_pushes(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[True], staged=())
    committer, store, log_path, _ = _setup(tmp_path, history)

    committer.commit(7, log_path, store.make_record(7, log_path))

    assert _names(history) == ["stage", "push"]


def test_commit_refuses_missing_log(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[True])
    committer, store, log_path, _ = _setup(tmp_path, history)
    missing = log_path.with_name("missing.jsonl")

    with pytest.raises(CommitFailure, match="missing"):
        committer.commit(7, missing, store.make_record(7, missing))

    assert history.calls == []
    assert not store.mapping_path(7).exists()


def test_commit_rejects_mismatched_thread(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[True])
    committer, store, log_path, _ = _setup(tmp_path, history)

    with pytest.raises(ValueError, match="thread_id"):
        committer.commit(7, log_path, store.make_record(8, log_path))


def test_stage_error_becomes_commit_failure(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[True], stage_error=True)
    committer, store, log_path, _ = _setup(tmp_path, history)

    with pytest.raises(CommitFailure, match="Could not stage"):
        committer.commit(7, log_path, store.make_record(7, log_path))


def test_mapping_written_reflects_this_run(tmp_path: Path) -> None:
    history = FakeHistory(push_results=[True])
    committer, store, log_path, _ = _setup(tmp_path, history)
    store.write_mapping(MappingRecord(thread_id=7, session_path="old.jsonl", updated_at="old"))

    committer.commit(7, log_path, store.make_record(7, log_path))

    payload = json.loads(store.mapping_path(7).read_text(encoding="utf-8"))
    assert payload["sessionPath"] == ".gitclaw/state/sessions/log.jsonl"
    assert payload["updatedAt"] != "old"
