from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path, PurePosixPath
import secrets
import tempfile
from typing import cast

from gitclaw.config import RuntimeConfig
from gitclaw.models import MappingRecord, ResolvedSession
from gitclaw.observability import log_event


LOGGER = logging.getLogger("gitclaw.session_store")


class SessionStore:
    """Thread-to-conversation-log mapping kept as one JSON file per thread.

    Layout under ``<install_root>/state``::

        issues/<thread_id>.json     mapping record, overwritten whole each turn
        sessions/<stamp>-<hex>.jsonl  engine-owned conversation log

    ``sessionPath`` is stored relative to the repository root so the record
    stays valid in every fresh checkout of the repository.
    """

    def __init__(self, runtime: RuntimeConfig, *, repo_root: Path) -> None:
        self._runtime = runtime
        self._repo_root = repo_root

    @property
    def issues_dir(self) -> Path:
        return self._runtime.issues_dir

    @property
    def sessions_dir(self) -> Path:
        return self._runtime.sessions_dir

    def mapping_path(self, thread_id: int) -> Path:
        return self.issues_dir / f"{thread_id}.json"

    def resolve(self, thread_id: int) -> ResolvedSession:
        record = self.read_mapping(thread_id)
        if record is None:
            log_event(LOGGER, "session_mapping_missing", thread_id=thread_id)
        else:
            log_path = self.absolute_log_path(record.session_path)
            if log_path.is_file():
                log_event(
                    LOGGER,
                    "session_resolved",
                    thread_id=thread_id,
                    mode="resume",
                    log_path=record.session_path,
                )
                return ResolvedSession(log_path=log_path, is_new=False)
            # A mapped log that vanished is data loss, not an error: start over.
            log_event(
                LOGGER,
                "session_log_missing",
                thread_id=thread_id,
                log_path=record.session_path,
            )

        log_path = self.allocate_log_path()
        log_event(
            LOGGER,
            "session_resolved",
            thread_id=thread_id,
            mode="new",
            log_path=self.stored_log_path(log_path),
        )
        return ResolvedSession(log_path=log_path, is_new=True)

    def allocate_log_path(self, *, now: datetime | None = None) -> Path:
        stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")
        while True:
            candidate = self.sessions_dir / f"{stamp}-{secrets.token_hex(4)}.jsonl"
            if not candidate.exists():
                return candidate

    def read_mapping(self, thread_id: int) -> MappingRecord | None:
        path = self.mapping_path(thread_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            log_event(
                LOGGER,
                "session_mapping_unreadable",
                thread_id=thread_id,
                path=str(path),
                error_type=type(exc).__name__,
            )
            return None
        record = _parse_mapping(text, fallback_thread_id=thread_id)
        if record is None:
            log_event(LOGGER, "session_mapping_unreadable", thread_id=thread_id, path=str(path))
        return record

    def write_mapping(self, record: MappingRecord) -> Path:
        path = self.mapping_path(record.thread_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "threadId": record.thread_id,
            "sessionPath": record.session_path,
            "updatedAt": record.updated_at,
        }
        fd, tmp_name = tempfile.mkstemp(prefix=f".{record.thread_id}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, indent=2) + "\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        log_event(
            LOGGER,
            "session_mapping_written",
            thread_id=record.thread_id,
            log_path=record.session_path,
        )
        return path

    def list_mappings(self) -> tuple[MappingRecord, ...]:
        if not self.issues_dir.is_dir():
            return ()
        records: list[MappingRecord] = []
        for path in self.issues_dir.glob("*.json"):
            if not path.stem.isdigit():
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                log_event(
                    LOGGER,
                    "session_mapping_unreadable",
                    path=str(path),
                    error_type=type(exc).__name__,
                )
                continue
            record = _parse_mapping(text, fallback_thread_id=int(path.stem))
            if record is not None:
                records.append(record)
        return tuple(sorted(records, key=lambda item: item.thread_id))

    def make_record(
        self, thread_id: int, log_path: Path, *, now: datetime | None = None
    ) -> MappingRecord:
        updated_at = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        return MappingRecord(
            thread_id=thread_id,
            session_path=self.stored_log_path(log_path),
            updated_at=updated_at,
        )

    def stored_log_path(self, log_path: Path) -> str:
        try:
            relative = log_path.resolve().relative_to(self._repo_root.resolve())
        except ValueError:
            return log_path.as_posix()
        return PurePosixPath(*relative.parts).as_posix()

    def absolute_log_path(self, stored: str) -> Path:
        path = Path(stored)
        if path.is_absolute():
            return path
        return self._repo_root / path


def _parse_mapping(text: str, *, fallback_thread_id: int) -> MappingRecord | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    payload_obj = cast(dict[str, object], payload)
    session_path = payload_obj.get("sessionPath")
    if not isinstance(session_path, str) or not session_path.strip():
        return None
    # Older records key the thread as issueNumber.
    raw_thread_id = payload_obj.get("threadId", payload_obj.get("issueNumber"))
    thread_id = raw_thread_id if isinstance(raw_thread_id, int) else fallback_thread_id
    updated_at = payload_obj.get("updatedAt")
    return MappingRecord(
        thread_id=thread_id,
        session_path=session_path,
        updated_at=updated_at if isinstance(updated_at, str) else "",
    )
