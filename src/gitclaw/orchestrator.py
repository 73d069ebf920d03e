from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Protocol

from gitclaw.activity import ActivitySignal, activity_marker
from gitclaw.agent_driver import required_provider_key, truncate_reply
from gitclaw.config import AppConfig
from gitclaw.gate import GateDenied, authorize_actor, require_enabled
from gitclaw.models import (
    AgentRunResult,
    CommitResult,
    FailureKind,
    Issue,
    MappingRecord,
    ResolvedSession,
    RunOutcome,
    RunPhase,
    ThreadEvent,
)
from gitclaw.observability import log_event, report_failure
from gitclaw.prompts import build_agent_input, render_missing_key_notice
from gitclaw.session_store import SessionStore
from gitclaw.state_committer import CommitFailure


LOGGER = logging.getLogger("gitclaw.orchestrator")


class PublishFailure(RuntimeError):
    """The reply could not be posted to the thread."""


class ProviderKeyMissing(RuntimeError):
    """The configured provider's API key is absent from the environment."""


class ThreadClient(Protocol):
    def get_issue(self, issue_number: int) -> Issue: ...

    def get_collaborator_permission(self, login: str) -> str: ...

    def post_issue_comment(self, issue_number: int, body: str) -> None: ...


class Driver(Protocol):
    def run(self, input_text: str, log_path: Path, is_new: bool, *, cwd: Path) -> AgentRunResult: ...


class Committer(Protocol):
    def commit(
        self,
        thread_id: int,
        log_path: Path,
        mapping_update: MappingRecord,
        *,
        branch: str | None = None,
    ) -> CommitResult: ...


class TurnOrchestrator:
    """Runs one conversational turn for one triggering event.

    Phases: gated, resolving, agent_running, publishing, committing, then done
    or failed. GateDenied and AgentFailure propagate before anything is posted
    or committed. Publish and commit failures are reported and recorded on the
    returned outcome; a failed publish still commits, so the agent's work is
    kept.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: ThreadClient,
        store: SessionStore,
        driver: Driver,
        committer: Committer,
        activity: ActivitySignal,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._store = store
        self._driver = driver
        self._committer = committer
        self._activity = activity
        self._environ = environ if environ is not None else os.environ

    def run_turn(self, event: ThreadEvent) -> RunOutcome:
        self._enter(event, "gated")
        try:
            self._authorize(event)
            require_enabled(self._config.runtime.install_root)
        except GateDenied as exc:
            self._enter(event, "failed")
            report_failure(LOGGER, "GateDenied", str(exc))
            raise

        with activity_marker(self._activity, event):
            try:
                return self._run_gated_turn(event)
            except Exception as exc:
                self._enter(event, "failed")
                report_failure(LOGGER, type(exc).__name__, str(exc))
                raise

    def _run_gated_turn(self, event: ThreadEvent) -> RunOutcome:
        self._enter(event, "resolving")
        session = self._store.resolve(event.thread_id)
        input_text = build_agent_input(event, self._fresh_issue(event))
        self._check_provider_key(event)

        self._enter(event, "agent_running")
        result = self._driver.run(
            input_text, session.log_path, session.is_new, cwd=self._config.repo_root
        )
        reply = truncate_reply(result.reply_text, self._config.runtime.max_comment_length)

        failures: list[FailureKind] = []
        self._enter(event, "publishing")
        reply_posted = self._publish(event, reply, failures)

        self._enter(event, "committing")
        committed = self._commit(event, session, failures)

        outcome = RunOutcome(
            thread_id=event.thread_id,
            phase="done" if not failures else "failed",
            session=session,
            reply_posted=reply_posted,
            committed=committed,
            failures=tuple(failures),
        )
        self._enter(event, outcome.phase)
        log_event(
            LOGGER,
            "run_finished",
            thread_id=event.thread_id,
            phase=outcome.phase,
            reply_posted=reply_posted,
            committed=committed,
            failures=",".join(failures) or None,
        )
        return outcome

    def _authorize(self, event: ThreadEvent) -> None:
        auth = self._config.auth
        if auth.trusts(event.actor_login):
            authorize_actor(actor_login=event.actor_login, actor_permission="", auth=auth)
            return
        if not event.actor_login:
            raise GateDenied("Triggering event has no actor login")
        try:
            permission = self._github.get_collaborator_permission(event.actor_login)
        except Exception as exc:  # noqa: BLE001
            raise GateDenied(
                f"Could not determine permission for {event.actor_login}: {exc}"
            ) from exc
        authorize_actor(actor_login=event.actor_login, actor_permission=permission, auth=auth)

    def _fresh_issue(self, event: ThreadEvent) -> Issue | None:
        if event.event_name != "issues":
            return None
        try:
            return self._github.get_issue(event.thread_id)
        except Exception as exc:  # noqa: BLE001
            # The payload copy may be truncated but is still a usable prompt.
            log_event(
                LOGGER,
                "issue_fetch_failed",
                thread_id=event.thread_id,
                error_type=type(exc).__name__,
            )
            return None

    def _check_provider_key(self, event: ThreadEvent) -> None:
        provider = self._config.agent.provider
        key_name = required_provider_key(provider)
        if key_name is None or self._environ.get(key_name):
            return
        try:
            self._github.post_issue_comment(
                event.thread_id, render_missing_key_notice(provider=provider, key_name=key_name)
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "missing_key_notice_failed",
                thread_id=event.thread_id,
                error_type=type(exc).__name__,
            )
        raise ProviderKeyMissing(
            f"{key_name} is not available to this run; provider {provider!r} needs it"
        )

    def _publish(self, event: ThreadEvent, reply: str, failures: list[FailureKind]) -> bool:
        try:
            self._github.post_issue_comment(event.thread_id, reply)
        except Exception as exc:  # noqa: BLE001
            failure = PublishFailure(f"Could not post reply to issue #{event.thread_id}: {exc}")
            failures.append("PublishFailure")
            report_failure(LOGGER, "PublishFailure", str(failure))
            return False
        log_event(LOGGER, "reply_published", thread_id=event.thread_id, length=len(reply))
        return True

    def _commit(
        self, event: ThreadEvent, session: ResolvedSession, failures: list[FailureKind]
    ) -> bool:
        record = self._store.make_record(event.thread_id, session.log_path)
        try:
            self._committer.commit(
                event.thread_id,
                session.log_path,
                record,
                branch=event.default_branch,
            )
        except CommitFailure as exc:
            failures.append("CommitFailure")
            report_failure(LOGGER, "CommitFailure", str(exc))
            return False
        return True

    def _enter(self, event: ThreadEvent, phase: RunPhase) -> None:
        log_event(LOGGER, "run_phase", thread_id=event.thread_id, phase=phase)
