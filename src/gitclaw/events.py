from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping, cast

from gitclaw.models import EventName, ThreadEvent


_SUPPORTED_EVENTS: tuple[EventName, ...] = ("issues", "issue_comment")


class EventPayloadError(ValueError):
    pass


def load_thread_event(
    *,
    event_path: Path | None = None,
    event_name: str | None = None,
    repo_full_name: str | None = None,
    fallback_branch: str = "main",
    environ: Mapping[str, str] | None = None,
) -> ThreadEvent:
    """Read the triggering event the way GitHub Actions hands it to a step.

    Explicit arguments win over ``GITHUB_EVENT_PATH``, ``GITHUB_EVENT_NAME`` and
    ``GITHUB_REPOSITORY``.
    """
    env = environ if environ is not None else os.environ
    path = event_path or _path_from_env(env, "GITHUB_EVENT_PATH")
    name = event_name or env.get("GITHUB_EVENT_NAME", "")
    repo = repo_full_name or env.get("GITHUB_REPOSITORY", "")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise EventPayloadError(f"Cannot read event payload {path}: {exc}") from exc
    return parse_thread_event(
        payload,
        event_name=name,
        repo_full_name=repo,
        fallback_branch=fallback_branch,
    )


def parse_thread_event(
    payload: object,
    *,
    event_name: str,
    repo_full_name: str,
    fallback_branch: str = "main",
) -> ThreadEvent:
    if event_name not in _SUPPORTED_EVENTS:
        raise EventPayloadError(
            f"Unsupported event {event_name!r}; expected one of: {', '.join(_SUPPORTED_EVENTS)}"
        )
    payload_obj = _require_object(payload, "event payload")
    issue = _require_object(payload_obj.get("issue"), "issue")
    number = issue.get("number")
    if isinstance(number, bool) or not isinstance(number, int):
        raise EventPayloadError("issue.number must be an integer")

    repository = _as_object_dict(payload_obj.get("repository")) or {}
    repo = repo_full_name or _as_string(repository.get("full_name"))
    if "/" not in repo:
        raise EventPayloadError(f"Repository must be owner/name, got {repo!r}")
    default_branch = _as_string(repository.get("default_branch")) or fallback_branch

    comment_id: int | None = None
    comment_body: str | None = None
    author = _login_of(issue.get("user"))
    if event_name == "issue_comment":
        comment = _require_object(payload_obj.get("comment"), "comment")
        raw_id = comment.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int):
            raise EventPayloadError("comment.id must be an integer")
        comment_id = raw_id
        comment_body = _as_string(comment.get("body"))
        author = _login_of(comment.get("user"))

    return ThreadEvent(
        repo_full_name=repo,
        event_name=cast(EventName, event_name),
        thread_id=number,
        title=_as_string(issue.get("title")),
        body=_as_string(issue.get("body")),
        actor_login=_login_of(payload_obj.get("sender")) or author,
        default_branch=default_branch,
        comment_id=comment_id,
        comment_body=comment_body,
    )


def _path_from_env(env: Mapping[str, str], key: str) -> Path:
    value = env.get(key)
    if not value:
        raise EventPayloadError(f"{key} is not set; pass the event payload path explicitly")
    return Path(value)


def _require_object(value: object, label: str) -> dict[str, object]:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        raise EventPayloadError(f"{label} must be a JSON object")
    return value_obj


def _login_of(value: object) -> str:
    user = _as_object_dict(value)
    if user is None:
        return ""
    login = user.get("login")
    return login.strip() if isinstance(login, str) else ""


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)
