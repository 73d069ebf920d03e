from __future__ import annotations

import logging
from pathlib import Path
import tomllib

from gitclaw.config import SENTINEL_NAME, AppConfig, ConfigError, load_config
from gitclaw.observability import log_event


LOGGER = logging.getLogger("gitclaw.preflight")
REQUIRED_GITIGNORE_ENTRIES: tuple[str, ...] = ("credentials/", "*.db")


def run_preflight(config_path: Path, *, repo_root: Path) -> tuple[AppConfig | None, list[str]]:
    """Validate the installation before anything is installed or invoked.

    Returns the parsed config (None if it could not be loaded) and every problem
    found; an empty list means the installation looks usable.
    """
    errors: list[str] = []
    config: AppConfig | None = None

    if not config_path.is_file():
        errors.append(f"Missing required file: {config_path}")
    else:
        try:
            config = load_config(config_path, repo_root=repo_root)
        except (ConfigError, tomllib.TOMLDecodeError) as exc:
            errors.append(f"{config_path.name}: {exc}")

    install_root = config.runtime.install_root if config else repo_root / ".gitclaw"
    sentinel = install_root / SENTINEL_NAME
    if not sentinel.is_file():
        errors.append(f"Missing required file: {sentinel}")

    gitignore = install_root / "state" / ".gitignore"
    if not gitignore.is_file():
        errors.append(f"Missing required file: {gitignore}")
    else:
        entries = {
            line.strip()
            for line in gitignore.read_text(encoding="utf-8").splitlines()
            if line.strip() and not line.strip().startswith("#")
        }
        for entry in REQUIRED_GITIGNORE_ENTRIES:
            if entry not in entries:
                errors.append(f"{gitignore}: missing entry {entry!r}")

    log_event(LOGGER, "preflight_finished", error_count=len(errors))
    return config, errors
