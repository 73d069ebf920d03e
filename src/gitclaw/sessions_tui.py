from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
from typing import cast

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.widgets import DataTable, Footer, Header, Static

from gitclaw.models import MappingRecord
from gitclaw.session_store import SessionStore


_DETAIL_TURN_LIMIT = 20
_PREVIEW_LIMIT = 400


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    timestamp: str
    text: str


def load_turns(log_path: Path, *, limit: int | None = None) -> tuple[ConversationTurn, ...]:
    """Read the message turns of a conversation log, newest last.

    The log belongs to the engine, so unknown record shapes are skipped rather
    than treated as errors.
    """
    if not log_path.is_file():
        return ()
    turns: list[ConversationTurn] = []
    with log_path.open(encoding="utf-8") as fh:
        for line in fh:
            turn = _turn_from_line(line)
            if turn is not None:
                turns.append(turn)
    if limit is not None:
        return tuple(turns[-limit:])
    return tuple(turns)


class SessionsApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 1;
        padding: 0 1;
    }
    #mappings-table {
        height: 1fr;
    }
    #detail-scroll {
        height: 2fr;
        border: round $accent;
    }
    """

    def __init__(self, *, store: SessionStore) -> None:
        super().__init__()
        self._store = store
        self._records: tuple[MappingRecord, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Threads", classes="panel-title")
            yield DataTable(id="mappings-table", cursor_type="row")
            yield Static("Conversation", classes="panel-title")
            with VerticalScroll(id="detail-scroll"):
                yield Static("", id="detail")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#mappings-table", DataTable)
        table.add_columns("Thread", "Updated", "Log", "Turns")
        self.refresh_data()

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.cursor_row < 0 or event.cursor_row >= len(self._records):
            return
        self._show_detail(self._records[event.cursor_row])

    def refresh_data(self) -> None:
        self._records = self._store.list_mappings()
        table = self.query_one("#mappings-table", DataTable)
        table.clear()
        present = 0
        for record in self._records:
            log_path = self._store.absolute_log_path(record.session_path)
            exists = log_path.is_file()
            present += int(exists)
            table.add_row(
                f"#{record.thread_id}",
                record.updated_at or "-",
                record.session_path if exists else f"{record.session_path} (missing)",
                str(len(load_turns(log_path))) if exists else "-",
            )
        summary = self.query_one("#summary", Static)
        summary.update(_summary_text(total=len(self._records), present=present))
        if self._records:
            self._show_detail(self._records[0])
        else:
            self.query_one("#detail", Static).update("No thread mappings recorded yet.")

    def _show_detail(self, record: MappingRecord) -> None:
        log_path = self._store.absolute_log_path(record.session_path)
        turns = load_turns(log_path, limit=_DETAIL_TURN_LIMIT)
        self.query_one("#detail", Static).update(render_turns(record, turns))


def run_sessions_tui(*, store: SessionStore) -> None:
    SessionsApp(store=store).run()


def render_turns(record: MappingRecord, turns: tuple[ConversationTurn, ...]) -> str:
    header = f"Thread #{record.thread_id} -> {record.session_path}"
    if not turns:
        return f"{header}\n\n(no readable turns)"
    blocks = [header]
    for turn in turns:
        text = turn.text if len(turn.text) <= _PREVIEW_LIMIT else f"{turn.text[:_PREVIEW_LIMIT]}..."
        blocks.append(f"[{turn.timestamp or '-'}] {turn.role}:\n{text or '<no text>'}")
    return "\n\n".join(blocks)


def _summary_text(*, total: int, present: int) -> str:
    return f"threads={total} logs_present={present} logs_missing={total - present}"


def _turn_from_line(line: str) -> ConversationTurn | None:
    text = line.strip()
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    record = cast(dict[str, object], payload)
    message = record.get("message")
    source = cast(dict[str, object], message) if isinstance(message, dict) else record
    role = source.get("role")
    if not isinstance(role, str):
        return None
    timestamp = record.get("timestamp", source.get("timestamp"))
    return ConversationTurn(
        role=role,
        timestamp=timestamp if isinstance(timestamp, str) else "",
        text=_content_text(source.get("content")),
    )


def _content_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_text = block.get("text")
        if block.get("type") == "text" and isinstance(block_text, str):
            parts.append(block_text)
    return "\n".join(parts)
