from __future__ import annotations

from pathlib import Path
import logging

from gitclaw.observability import log_event
from gitclaw.shell import CommandError, run


LOGGER = logging.getLogger("gitclaw.git_ops")
_NETWORK_TIMEOUT_SECONDS = 120


class GitStateRepo:
    """The checkout whose pushed history is the shared, durable state store."""

    def __init__(self, checkout_path: Path, *, author_name: str, author_email: str) -> None:
        self.checkout_path = checkout_path
        self.author_name = author_name
        self.author_email = author_email

    def stage(self, paths: tuple[Path, ...], *, all_changes: bool) -> None:
        if all_changes:
            run(["git", "-C", str(self.checkout_path), "add", "-A"])
            return
        run(
            [
                "git",
                "-C",
                str(self.checkout_path),
                "add",
                "--",
                *(str(path) for path in paths),
            ]
        )

    def list_staged_files(self) -> tuple[str, ...]:
        diff = run(["git", "-C", str(self.checkout_path), "diff", "--cached", "--name-only"]).strip()
        if not diff:
            return ()
        return tuple(line for line in diff.splitlines() if line.strip())

    def commit(self, message: str) -> None:
        log_event(LOGGER, "git_commit", checkout_path=str(self.checkout_path), message=message)
        run(["git", "-C", str(self.checkout_path), *self._identity_args(), "commit", "-m", message])

    def push(self, branch: str) -> bool:
        try:
            run(
                ["git", "-C", str(self.checkout_path), "push", "origin", f"HEAD:{branch}"],
                timeout_seconds=_NETWORK_TIMEOUT_SECONDS,
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_rejected",
                checkout_path=str(self.checkout_path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            return False
        log_event(LOGGER, "git_push", checkout_path=str(self.checkout_path), branch=branch)
        return True

    def rebase_onto_remote(self, branch: str) -> None:
        """Replay local commits on the new remote tip, preferring this run's file versions.

        During a rebase ``-X theirs`` selects the commits being replayed, so when
        two runs touched the same mapping record the later pusher wins. Uncommitted
        edits left in the worktree are stashed around the rebase.
        """
        log_event(LOGGER, "git_rebase", checkout_path=str(self.checkout_path), branch=branch)
        try:
            run(
                [
                    "git",
                    "-C",
                    str(self.checkout_path),
                    *self._identity_args(),
                    "pull",
                    "--rebase",
                    "--autostash",
                    "-X",
                    "theirs",
                    "origin",
                    branch,
                ],
                timeout_seconds=_NETWORK_TIMEOUT_SECONDS,
            )
        except CommandError:
            run(["git", "-C", str(self.checkout_path), "rebase", "--abort"], check=False)
            raise

    def _identity_args(self) -> list[str]:
        # Never written to the checkout's git config.
        return ["-c", f"user.name={self.author_name}", "-c", f"user.email={self.author_email}"]
