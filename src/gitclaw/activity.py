from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Iterator, Protocol

from gitclaw.models import ReactionHandle, ThreadEvent
from gitclaw.observability import log_event


LOGGER = logging.getLogger("gitclaw.activity")


class ReactionClient(Protocol):
    def add_issue_reaction(self, issue_number: int) -> int: ...

    def add_comment_reaction(self, comment_id: int) -> int: ...

    def delete_issue_reaction(self, issue_number: int, reaction_id: int) -> None: ...

    def delete_comment_reaction(self, comment_id: int, reaction_id: int) -> None: ...


class ActivitySignal:
    """Advisory "work in progress" marker on the triggering issue or comment.

    Neither ``begin`` nor ``end`` ever raises.
    """

    def __init__(self, client: ReactionClient) -> None:
        self._client = client

    def begin(self, event: ThreadEvent) -> ReactionHandle | None:
        try:
            if event.event_name == "issue_comment" and event.comment_id is not None:
                reaction_id = self._client.add_comment_reaction(event.comment_id)
                handle = ReactionHandle(
                    reaction_id=reaction_id,
                    target="comment",
                    issue_number=event.thread_id,
                    comment_id=event.comment_id,
                )
            else:
                reaction_id = self._client.add_issue_reaction(event.thread_id)
                handle = ReactionHandle(
                    reaction_id=reaction_id,
                    target="issue",
                    issue_number=event.thread_id,
                    comment_id=None,
                )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "activity_marker_add_failed",
                issue_number=event.thread_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        log_event(
            LOGGER,
            "activity_marker_added",
            issue_number=handle.issue_number,
            target=handle.target,
            reaction_id=handle.reaction_id,
        )
        return handle

    def end(self, handle: ReactionHandle | None) -> None:
        if handle is None:
            return
        try:
            if handle.target == "comment" and handle.comment_id is not None:
                self._client.delete_comment_reaction(handle.comment_id, handle.reaction_id)
            else:
                self._client.delete_issue_reaction(handle.issue_number, handle.reaction_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "activity_marker_remove_failed",
                issue_number=handle.issue_number,
                reaction_id=handle.reaction_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(
            LOGGER,
            "activity_marker_removed",
            issue_number=handle.issue_number,
            reaction_id=handle.reaction_id,
        )


@contextmanager
def activity_marker(signal: ActivitySignal, event: ThreadEvent) -> Iterator[ReactionHandle | None]:
    handle = signal.begin(event)
    try:
        yield handle
    finally:
        signal.end(handle)
