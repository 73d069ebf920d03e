from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal


EventName = Literal["issues", "issue_comment"]
ReactionTarget = Literal["issue", "comment"]
ThinkingDepth = Literal["low", "medium", "high"]
PermissionLevel = Literal["none", "read", "triage", "write", "maintain", "admin"]
AgentEventKind = Literal[
    "text_delta",
    "message_complete",
    "tool_call",
    "tool_result",
    "turn_end",
    "other",
]
RunPhase = Literal[
    "gated",
    "resolving",
    "agent_running",
    "publishing",
    "committing",
    "done",
    "failed",
]
FailureKind = Literal["GateDenied", "AgentFailure", "PublishFailure", "CommitFailure"]


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    html_url: str
    author_login: str = ""


@dataclass(frozen=True)
class ThreadEvent:
    repo_full_name: str
    event_name: EventName
    thread_id: int
    title: str
    body: str
    actor_login: str
    default_branch: str
    comment_id: int | None = None
    comment_body: str | None = None

    @property
    def owner(self) -> str:
        return self.repo_full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo_full_name.split("/", 1)[1]


@dataclass(frozen=True)
class ReactionHandle:
    reaction_id: int
    target: ReactionTarget
    issue_number: int
    comment_id: int | None


@dataclass(frozen=True)
class MappingRecord:
    thread_id: int
    session_path: str
    updated_at: str


@dataclass(frozen=True)
class ResolvedSession:
    log_path: Path
    is_new: bool


@dataclass(frozen=True)
class AgentEvent:
    role: str
    timestamp: str
    kind: AgentEventKind
    payload: str


@dataclass(frozen=True)
class AgentRunResult:
    reply_text: str
    raw_event_log: tuple[AgentEvent, ...]


@dataclass(frozen=True)
class CommitResult:
    committed: bool
    attempts: int


@dataclass(frozen=True)
class RunOutcome:
    thread_id: int
    phase: RunPhase
    session: ResolvedSession | None
    reply_posted: bool
    committed: bool
    failures: tuple[FailureKind, ...]

    @property
    def ok(self) -> bool:
        return not self.failures
