from __future__ import annotations

import io
import logging
from pathlib import Path
import sys

import pytest

from gitclaw.observability import configure_logging, log_event, report_failure


@pytest.fixture(autouse=True)
def restore_gitclaw_logger_state() -> None:
    logger = logging.getLogger("gitclaw")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("gitclaw")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("gitclaw")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr

    configure_logging(verbose="high")
    assert len(logger.handlers) == 1


def test_configure_logging_low_mode_filters_to_high_signal_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("gitclaw.tests.low")

    logger.info("event=run_phase thread_id=7 phase=resolving")
    logger.info("event=session_resolved thread_id=7 mode=new")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.error("event=command_failed command=git push")

    stderr = capsys.readouterr().err
    assert "event=run_phase" not in stderr
    assert "event=session_resolved thread_id=7 mode=new" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=command_failed command=git push" in stderr


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("gitclaw.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        path_value=Path("state/sessions/a.jsonl"),
        complex_value={"k": "v"},
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert f"long_text={'x' * 120}..." in message
    assert "path_value=state/sessions/a.jsonl" in message
    assert "complex_value=<dict>" in message
    assert message.index(" a=") < message.index(" b=")


def test_report_failure_logs_without_annotation_outside_actions(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    configure_logging(verbose="low")
    stream = io.StringIO()

    report_failure(logging.getLogger("gitclaw.tests.fail"), "AgentFailure", "engine died", stream=stream)

    assert stream.getvalue() == ""
    stderr = capsys.readouterr().err
    assert "event=run_failure" in stderr
    assert "kind=AgentFailure" in stderr
    assert 'error="engine died"' in stderr


def test_report_failure_writes_escaped_annotation_under_actions(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    configure_logging(verbose=False)
    stream = io.StringIO()

    report_failure(
        logging.getLogger("gitclaw.tests.fail"),
        "CommitFailure",
        "push 100% rejected\r\nafter 3 attempts",
        stream=stream,
    )

    assert stream.getvalue() == (
        "::error title=CommitFailure::push 100%25 rejected%0D%0Aafter 3 attempts\n"
    )
