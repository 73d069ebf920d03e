from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from queue import Empty, SimpleQueue
import subprocess
from threading import Thread
import time
from typing import IO, Final, TextIO, cast

from gitclaw.config import AgentConfig
from gitclaw.models import AgentEvent, AgentEventKind, AgentRunResult
from gitclaw.observability import log_event


LOGGER = logging.getLogger("gitclaw.agent_driver")

# Engines that catch SIGTERM exit 143 after flushing their output.
_TOLERATED_EXIT_CODES: Final[frozenset[int]] = frozenset({0, 143})
_STREAM_CLOSED: Final[object] = object()

PROVIDER_KEY_ENV: Final[dict[str, str]] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


class AgentFailure(RuntimeError):
    """The engine exited badly, timed out, streamed garbage, or produced no reply."""


def required_provider_key(provider: str) -> str | None:
    return PROVIDER_KEY_ENV.get(provider.strip().lower())


class AgentDriver:
    def __init__(
        self,
        config: AgentConfig,
        *,
        raw_log_path: Path | None = None,
        echo: TextIO | None = None,
    ) -> None:
        self._config = config
        self._raw_log_path = raw_log_path
        self._echo = echo

    def build_command(self, *, input_text: str, log_path: Path, cwd: Path) -> list[str]:
        binary = self._config.binary
        if "/" in binary and not Path(binary).is_absolute():
            binary = str(cwd / binary)
        cmd = [
            binary,
            "--mode",
            "json",
            "--provider",
            self._config.provider,
            "--model",
            self._config.model,
            "--thinking",
            self._config.thinking_depth,
            "--session",
            str(log_path),
        ]
        if self._config.tool_allowlist:
            cmd.extend(["--tools", ",".join(self._config.tool_allowlist)])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)
        cmd.extend(["-p", input_text])
        return cmd

    def run(self, input_text: str, log_path: Path, is_new: bool, *, cwd: Path) -> AgentRunResult:
        mode = "new" if is_new else "resume"
        if is_new:
            log_path.parent.mkdir(parents=True, exist_ok=True)
        elif not log_path.is_file():
            raise AgentFailure(f"Cannot resume: conversation log {log_path} does not exist")

        cmd = self.build_command(input_text=input_text, log_path=log_path, cwd=cwd)
        log_event(
            LOGGER,
            "agent_invocation_started",
            mode=mode,
            provider=self._config.provider,
            model=self._config.model,
            thinking=self._config.thinking_depth,
            log_path=str(log_path),
        )
        started = time.monotonic()
        events = self._stream_events(cmd, cwd=cwd)
        reply = extract_reply(events)
        log_event(
            LOGGER,
            "agent_invocation_finished",
            mode=mode,
            event_count=len(events),
            reply_length=len(reply),
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return AgentRunResult(reply_text=reply, raw_event_log=events)

    def _stream_events(self, cmd: list[str], *, cwd: Path) -> tuple[AgentEvent, ...]:
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            log_event(LOGGER, "agent_spawn_failed", error_type=type(exc).__name__, error=str(exc))
            raise AgentFailure(f"Could not start agent engine {cmd[0]}: {exc}") from exc

        lines: SimpleQueue[object] = SimpleQueue()
        reader = Thread(
            target=_pump_lines,
            args=(cast(IO[str], proc.stdout), lines),
            name="gitclaw-agent-stdout",
            daemon=True,
        )
        reader.start()

        raw_sink = self._open_raw_sink()
        events: list[AgentEvent] = []
        deadline = time.monotonic() + self._config.timeout_seconds
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise self._timed_out(proc)
                try:
                    item = lines.get(timeout=remaining)
                except Empty:
                    raise self._timed_out(proc) from None
                if item is _STREAM_CLOSED:
                    break
                line = cast(str, item)
                if raw_sink is not None:
                    raw_sink.write(line)
                if self._echo is not None:
                    self._echo.write(line)
                event = translate_event_line(line)
                if event is not None:
                    events.append(event)
            exit_code = self._wait_for_exit(proc)
        except BaseException:
            _kill(proc)
            raise
        finally:
            if raw_sink is not None:
                raw_sink.close()

        if exit_code not in _TOLERATED_EXIT_CODES:
            log_event(LOGGER, "agent_exit_failed", exit_code=exit_code, event_count=len(events))
            raise AgentFailure(f"Agent engine exited with code {exit_code}")
        return tuple(events)

    def _wait_for_exit(self, proc: subprocess.Popen[str]) -> int:
        try:
            return proc.wait(timeout=self._config.exit_grace_seconds)
        except subprocess.TimeoutExpired:
            # Output is complete; an engine that lingers after closing stdout is not a failure.
            log_event(LOGGER, "agent_exit_grace_expired", grace=self._config.exit_grace_seconds)
            proc.terminate()
            try:
                proc.wait(timeout=self._config.exit_grace_seconds)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            return 0

    def _timed_out(self, proc: subprocess.Popen[str]) -> AgentFailure:
        _kill(proc)
        log_event(LOGGER, "agent_timed_out", timeout_seconds=self._config.timeout_seconds)
        return AgentFailure(f"Agent engine timed out after {self._config.timeout_seconds}s")

    def _open_raw_sink(self) -> TextIO | None:
        if self._raw_log_path is None:
            return None
        self._raw_log_path.parent.mkdir(parents=True, exist_ok=True)
        return self._raw_log_path.open("w", encoding="utf-8")


def translate_event_line(line: str, *, received_at: str | None = None) -> AgentEvent | None:
    """Map one line of the engine's JSONL stream onto the internal event schema.

    Lines that are not JSON objects at all are progress noise and yield None. A
    line that starts like an object but does not parse is a malformed stream.
    """
    text = line.strip()
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AgentFailure(f"Malformed agent event line: {text[:120]}") from exc
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise AgentFailure("Agent event line is not a JSON object")

    stamp = received_at or _utc_now_iso8601()
    event_type = payload_obj.get("type")
    if event_type == "message_end":
        message = _as_object_dict(payload_obj.get("message")) or {}
        role = message.get("role")
        return AgentEvent(
            role=role if isinstance(role, str) else "unknown",
            timestamp=_event_timestamp(message.get("timestamp"), stamp),
            kind="message_complete",
            payload=_message_text(message.get("content")),
        )
    if event_type == "message_update":
        update = _as_object_dict(payload_obj.get("assistantMessageEvent")) or {}
        delta = update.get("delta")
        return AgentEvent(
            role="assistant",
            timestamp=stamp,
            kind="text_delta",
            payload=delta if isinstance(delta, str) else "",
        )
    if event_type in {"tool_execution_start", "tool_execution_end"}:
        tool_name = payload_obj.get("toolName")
        kind: AgentEventKind = "tool_call" if event_type == "tool_execution_start" else "tool_result"
        detail: dict[str, object] = {"tool": tool_name if isinstance(tool_name, str) else ""}
        if kind == "tool_result":
            detail["isError"] = bool(payload_obj.get("isError"))
        return AgentEvent(role="tool", timestamp=stamp, kind=kind, payload=json.dumps(detail))
    if event_type in {"turn_end", "agent_end"}:
        return AgentEvent(role="system", timestamp=stamp, kind="turn_end", payload=str(event_type))
    return AgentEvent(
        role="system",
        timestamp=stamp,
        kind="other",
        payload=event_type if isinstance(event_type, str) else "",
    )


def extract_reply(events: tuple[AgentEvent, ...] | list[AgentEvent]) -> str:
    # The last completed message may be empty (e.g. an API error after a tool call),
    # so keep walking back to the most recent one that carries text.
    for event in reversed(events):
        if event.kind != "message_complete" or event.role != "assistant":
            continue
        if event.payload.strip():
            return event.payload
    raise AgentFailure("Agent engine did not emit a completed assistant message with text")


def truncate_reply(text: str, limit: int) -> str:
    if limit < 1:
        raise ValueError("limit must be >= 1")
    trimmed = text.strip()
    if len(trimmed) <= limit:
        return trimmed
    log_event(LOGGER, "reply_truncated", original_length=len(trimmed), limit=limit)
    return trimmed[:limit]


def _pump_lines(stream: IO[str], sink: SimpleQueue[object]) -> None:
    try:
        for line in stream:
            sink.put(line)
    finally:
        sink.put(_STREAM_CLOSED)


def _kill(proc: subprocess.Popen[str]) -> None:
    if proc.poll() is not None:
        return
    proc.kill()
    proc.wait()


def _message_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        block_obj = _as_object_dict(block)
        if block_obj is None or block_obj.get("type") != "text":
            continue
        text = block_obj.get("text")
        if isinstance(text, str):
            parts.append(text)
    return "\n".join(parts)


def _event_timestamp(value: object, default: str) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, int | float) and not isinstance(value, bool):
        # Engine timestamps are epoch milliseconds.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%S.%fZ"
        )
    return default


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
