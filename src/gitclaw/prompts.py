from __future__ import annotations

from gitclaw.models import Issue, ThreadEvent


def build_agent_input(event: ThreadEvent, issue: Issue | None = None) -> str:
    """Text handed to the engine for this turn.

    A reply uses the new comment verbatim. An opened issue uses its title and
    body, preferring the freshly fetched issue because webhook payloads can
    truncate long bodies.
    """
    if event.event_name == "issue_comment":
        return event.comment_body or ""
    title = issue.title if issue is not None else event.title
    body = issue.body if issue is not None else event.body
    return f"{title}\n\n{body}"


def render_missing_key_notice(*, provider: str, key_name: str) -> str:
    return (
        f"## Missing API key: `{key_name}`\n\n"
        f"The configured provider is `{provider}`, but the `{key_name}` secret is not "
        "available to this workflow run.\n\n"
        "### How to fix\n\n"
        "**Option A: repository secret**\n"
        "1. Go to **Settings > Secrets and variables > Actions > New repository secret**\n"
        f"2. Name: `{key_name}`, Value: your API key\n\n"
        "**Option B: organization secret**\n"
        "Organization secrets reach a workflow only when the secret has been granted to "
        "this repository:\n"
        "1. Go to **Organization Settings > Secrets and variables > Actions**\n"
        f"2. Open the `{key_name}` secret and choose **Repository access**\n"
        "3. Add this repository to the selected repositories\n\n"
        "Once the secret is available, post a new comment on this issue to run again."
    )
