from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from gitclaw.config import PERMISSION_LEVELS, SENTINEL_NAME, AuthConfig
from gitclaw.models import PermissionLevel
from gitclaw.observability import log_event


LOGGER = logging.getLogger("gitclaw.gate")


class GateDenied(RuntimeError):
    """Raised when a run must stop before any side effect."""


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str


def check_enabled(install_root: Path) -> GateDecision:
    # Checked fresh on every call, never cached.
    sentinel = install_root / SENTINEL_NAME
    if sentinel.is_file():
        decision = GateDecision(allowed=True, reason=f"gitclaw enabled: {sentinel.name} found")
    else:
        decision = GateDecision(
            allowed=False,
            reason=(
                f"gitclaw disabled: sentinel file {sentinel} is missing. "
                "Restore it and push to the repository to enable automation."
            ),
        )
    log_event(LOGGER, "gate_checked", allowed=decision.allowed, sentinel=str(sentinel))
    return decision


def require_enabled(install_root: Path) -> None:
    decision = check_enabled(install_root)
    if not decision.allowed:
        raise GateDenied(decision.reason)


def permission_rank(level: str) -> int:
    normalized = level.strip().lower()
    for rank, candidate in enumerate(PERMISSION_LEVELS):
        if candidate == normalized:
            return rank
    return 0


def authorize_actor(*, actor_login: str, actor_permission: str, auth: AuthConfig) -> None:
    """Raise GateDenied unless the actor is trusted or has at least the configured tier.

    Unknown permission strings from the platform rank as ``none``.
    """
    if auth.trusts(actor_login):
        log_event(LOGGER, "actor_authorized", actor=actor_login, via="trusted_users")
        return

    required: PermissionLevel = auth.min_permission
    if permission_rank(actor_permission) >= permission_rank(required):
        log_event(
            LOGGER,
            "actor_authorized",
            actor=actor_login,
            permission=actor_permission,
            required=required,
        )
        return

    log_event(
        LOGGER,
        "actor_denied",
        actor=actor_login,
        permission=actor_permission,
        required=required,
    )
    raise GateDenied(
        f"Actor {actor_login or '<unknown>'} has permission {actor_permission or 'none'!r}; "
        f"at least {required!r} is required"
    )
