from __future__ import annotations

from gitclaw.models import Issue, ThreadEvent
from gitclaw.prompts import build_agent_input, render_missing_key_notice


def _event(**overrides: object) -> ThreadEvent:
    values: dict[str, object] = {
        "repo_full_name": "o/r",
        "event_name": "issues",
        "thread_id": 7,
        "title": "hello",
        "body": "payload body",
        "actor_login": "alice",
        "default_branch": "main",
    }
    values.update(overrides)
    return ThreadEvent(**values)  # type: ignore[arg-type]


def test_build_agent_input_for_opened_issue() -> None:
    assert build_agent_input(_event()) == "hello\n\npayload body"


def test_build_agent_input_prefers_fetched_issue() -> None:
    issue = Issue(number=7, title="hello (edited)", body="full body", html_url="u")

    assert build_agent_input(_event(), issue) == "hello (edited)\n\nfull body"


def test_build_agent_input_for_comment_uses_comment_only() -> None:
    event = _event(event_name="issue_comment", comment_id=3, comment_body="how are you")
    issue = Issue(number=7, title="hello", body="ignored", html_url="u")

    assert build_agent_input(event, issue) == "how are you"
    assert build_agent_input(_event(event_name="issue_comment", comment_id=3)) == ""


def test_render_missing_key_notice_names_secret_and_provider() -> None:
    notice = render_missing_key_notice(provider="openai", key_name="OPENAI_API_KEY")

    assert notice.startswith("## Missing API key: `OPENAI_API_KEY`")
    assert "`openai`" in notice
    assert "Repository access" in notice
    assert "—" not in notice
