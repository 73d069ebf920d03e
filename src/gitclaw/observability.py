from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "gitclaw"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "gate_checked",
        "actor_authorized",
        "session_resolved",
        "agent_invocation_started",
        "agent_invocation_finished",
        "reply_published",
        "state_committed",
        "run_finished",
        "git_push_rejected",
        "activity_marker_add_failed",
        "activity_marker_remove_failed",
    }
)

# GitHub Actions workflow commands need these characters escaped in the message.
_ANNOTATION_ESCAPES: Final[tuple[tuple[str, str], ...]] = (
    ("%", "%25"),
    ("\r", "%0D"),
    ("\n", "%0A"),
)


VerboseMode = Literal["low", "high"]


def configure_logging(verbose: bool | str | None) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def report_failure(
    logger: logging.Logger,
    kind: str,
    message: str,
    *,
    stream: TextIO | None = None,
) -> None:
    """Log a run failure and, under GitHub Actions, raise an error annotation.

    The annotation is written to stdout because the Actions runner only parses
    workflow commands from the step's standard output.
    """
    logger.error(_build_event_message(event="run_failure", fields={"kind": kind, "error": message}))
    if os.environ.get("GITHUB_ACTIONS") != "true":
        return
    out = stream if stream is not None else sys.stdout
    out.write(f"::error title={kind}::{_escape_annotation(message)}\n")
    out.flush()


def _escape_annotation(message: str) -> str:
    escaped = message
    for raw, replacement in _ANNOTATION_ESCAPES:
        escaped = escaped.replace(raw, replacement)
    return escaped


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, Path):
        normalized = value.as_posix()
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS
