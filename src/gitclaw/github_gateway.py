from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import cast

from gitclaw.models import Issue
from gitclaw.observability import log_event
from gitclaw.shell import run


LOGGER = logging.getLogger("gitclaw.github_gateway")
_REACTION_CONTENT = "eyes"
_GH_TIMEOUT_SECONDS = 60


class GitHubApiError(RuntimeError):
    """A `gh api` call returned a non-2xx status or an unexpected payload."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_issue(self, issue_number: int) -> Issue:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for issue")
        user_obj = _as_object_dict(payload_obj.get("user"))
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=issue_number)
        return Issue(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
            author_login=_as_login(user_obj.get("login") if user_obj else None),
        )

    def get_collaborator_permission(self, login: str) -> str:
        path = f"/repos/{self.owner}/{self.name}/collaborators/{login}/permission"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for permission")
        permission = _as_string(payload_obj.get("permission")).strip().lower() or "none"
        log_event(
            LOGGER,
            "github_read",
            endpoint="collaborator_permission",
            login=login,
            permission=permission,
        )
        return permission

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_issue_comment_posted",
            issue_number=issue_number,
            body_length=len(body),
        )

    def add_issue_reaction(self, issue_number: int) -> int:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/reactions"
        return self._add_reaction(path)

    def add_comment_reaction(self, comment_id: int) -> int:
        path = f"/repos/{self.owner}/{self.name}/issues/comments/{comment_id}/reactions"
        return self._add_reaction(path)

    def delete_issue_reaction(self, issue_number: int, reaction_id: int) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/reactions/{reaction_id}"
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_reaction_deleted", target="issue", reaction_id=reaction_id)

    def delete_comment_reaction(self, comment_id: int, reaction_id: int) -> None:
        path = (
            f"/repos/{self.owner}/{self.name}/issues/comments/{comment_id}"
            f"/reactions/{reaction_id}"
        )
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_reaction_deleted", target="comment", reaction_id=reaction_id)

    def _add_reaction(self, path: str) -> int:
        payload_obj = _as_object_dict(
            self._api_json("POST", path, payload={"content": _REACTION_CONTENT})
        )
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for reaction")
        reaction_id = _as_int(payload_obj.get("id"), field="id")
        log_event(LOGGER, "github_reaction_added", path=path, reaction_id=reaction_id)
        return reaction_id

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(
            cmd, input_text=stdin_payload, check=False, timeout_seconds=_GH_TIMEOUT_SECONDS
        )
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except GitHubApiError:
            log_event(
                LOGGER,
                "github_api_unparseable",
                method=method_upper,
                path=path,
                raw_preview=_preview_for_log(raw),
            )
            raise
        if status_code < 200 or status_code >= 300:
            log_event(
                LOGGER,
                "github_api_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                body_preview=_preview_for_log(body),
            )
            raise GitHubApiError(
                f"GitHub API {method_upper} {path} failed with status {status_code}: "
                f"{body.strip() or '<empty>'}"
            )
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(f"GitHub API {method_upper} {path} returned invalid JSON") from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


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


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")
