from __future__ import annotations

import logging
from pathlib import Path
import time
from typing import Callable, Protocol

from gitclaw.config import RuntimeConfig
from gitclaw.models import CommitResult, MappingRecord
from gitclaw.observability import log_event
from gitclaw.session_store import SessionStore
from gitclaw.shell import CommandError


LOGGER = logging.getLogger("gitclaw.state_committer")


class CommitFailure(RuntimeError):
    """State could not be durably recorded within the retry bound."""


class HistoryStore(Protocol):
    def stage(self, paths: tuple[Path, ...], *, all_changes: bool) -> None: ...

    def list_staged_files(self) -> tuple[str, ...]: ...

    def commit(self, message: str) -> None: ...

    def push(self, branch: str) -> bool: ...

    def rebase_onto_remote(self, branch: str) -> None: ...


class StateCommitter:
    """Records the mapping record and conversation log as one commit, then pushes.

    A rejected push means another run advanced the tip. The local commit is
    rebased onto the new tip and the push is retried, up to
    ``runtime.commit_max_attempts`` pushes in total. Each run only adds or
    overwrites files keyed by its own thread, so rebasing never has to merge
    another thread's changes. Two runs on the same thread race, and the last
    successful push decides the mapping record.
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        *,
        history: HistoryStore,
        store: SessionStore,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runtime = runtime
        self._history = history
        self._store = store
        self._sleep = sleep

    def commit(
        self,
        thread_id: int,
        log_path: Path,
        mapping_update: MappingRecord,
        *,
        branch: str | None = None,
    ) -> CommitResult:
        target_branch = branch or self._runtime.default_branch
        if not log_path.is_file():
            raise CommitFailure(
                f"Conversation log {log_path} is missing; refusing to record a mapping to it"
            )
        if mapping_update.thread_id != thread_id:
            raise ValueError("mapping_update.thread_id must match thread_id")

        try:
            mapping_path = self._store.write_mapping(mapping_update)
            self._history.stage(
                (log_path, mapping_path), all_changes=self._runtime.stage_all_changes
            )
            staged = self._history.list_staged_files()
            if staged:
                self._history.commit(f"gitclaw: work on issue #{thread_id}")
        except (CommandError, OSError) as exc:
            log_event(
                LOGGER,
                "state_commit_stage_failed",
                thread_id=thread_id,
                error_type=type(exc).__name__,
            )
            raise CommitFailure(f"Could not stage state for issue #{thread_id}: {exc}") from exc

        max_attempts = self._runtime.commit_max_attempts
        for attempt in range(1, max_attempts + 1):
            if self._history.push(target_branch):
                log_event(
                    LOGGER,
                    "state_committed",
                    thread_id=thread_id,
                    attempts=attempt,
                    staged_file_count=len(staged),
                    branch=target_branch,
                )
                return CommitResult(committed=True, attempts=attempt)
            if attempt == max_attempts:
                break
            delay = self._backoff_seconds(attempt)
            log_event(
                LOGGER,
                "state_commit_retrying",
                thread_id=thread_id,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=delay,
            )
            self._sleep(delay)
            try:
                self._history.rebase_onto_remote(target_branch)
            except CommandError as exc:
                # Leave the commit in place; the next push attempt reports whether the tip moved.
                log_event(
                    LOGGER,
                    "state_commit_rebase_failed",
                    thread_id=thread_id,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )

        log_event(
            LOGGER,
            "state_commit_exhausted",
            thread_id=thread_id,
            attempts=max_attempts,
            branch=target_branch,
        )
        raise CommitFailure(
            f"Could not push state for issue #{thread_id} to {target_branch} "
            f"after {max_attempts} attempts"
        )

    def _backoff_seconds(self, attempt: int) -> float:
        base = self._runtime.commit_backoff_seconds
        return min(base * (2 ** (attempt - 1)), self._runtime.commit_backoff_max_seconds)
