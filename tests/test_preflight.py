from __future__ import annotations

from pathlib import Path

from gitclaw.config import SENTINEL_NAME
from gitclaw.gate import check_enabled
from gitclaw.preflight import run_preflight


def _install(root: Path, *, gitignore: str | None = "credentials/\n*.db\n", enabled: bool = True) -> Path:
    install_root = root / ".gitclaw"
    (install_root / "state").mkdir(parents=True)
    config_path = install_root / "config.toml"
    config_path.write_text('[agent]\nprovider = "anthropic"\nmodel = "m"\n', encoding="utf-8")
    if enabled:
        (install_root / "GITCLAW-ENABLED.md").write_text("on\n", encoding="utf-8")
    if gitignore is not None:
        (install_root / "state" / ".gitignore").write_text(gitignore, encoding="utf-8")
    return config_path


def test_preflight_passes_for_complete_install(tmp_path: Path) -> None:
    config_path = _install(tmp_path)

    config, errors = run_preflight(config_path, repo_root=tmp_path)

    assert errors == []
    assert config is not None
    assert config.agent.provider == "anthropic"


def test_preflight_reports_every_problem(tmp_path: Path) -> None:
    config_path = _install(tmp_path, gitignore="# secrets\ncredentials/\n", enabled=False)

    _, errors = run_preflight(config_path, repo_root=tmp_path)

    assert len(errors) == 2
    assert "GITCLAW-ENABLED.md" in errors[0]
    assert "missing entry '*.db'" in errors[1]


def test_preflight_reports_missing_gitignore(tmp_path: Path) -> None:
    config_path = _install(tmp_path, gitignore=None)

    _, errors = run_preflight(config_path, repo_root=tmp_path)

    assert errors == [f"Missing required file: {tmp_path.resolve() / '.gitclaw/state/.gitignore'}"]


def test_preflight_reports_missing_or_invalid_config(tmp_path: Path) -> None:
    config, errors = run_preflight(tmp_path / "nope.toml", repo_root=tmp_path)
    assert config is None
    assert errors[0].startswith("Missing required file:")

    bad = tmp_path / "bad.toml"
    bad.write_text("[agent\n", encoding="utf-8")
    config, errors = run_preflight(bad, repo_root=tmp_path)
    assert config is None
    assert errors[0].startswith("bad.toml:")

    invalid = tmp_path / "invalid.toml"
    invalid.write_text("[runtime]\n", encoding="utf-8")
    _, errors = run_preflight(invalid, repo_root=tmp_path)
    assert errors[0] == "invalid.toml: [agent] is required and must be a TOML table"


def test_preflight_and_gate_agree_on_sentinel(tmp_path: Path) -> None:
    config_path = _install(tmp_path, enabled=False)
    sentinel = tmp_path / ".gitclaw" / SENTINEL_NAME
    sentinel.mkdir()

    config, errors = run_preflight(config_path, repo_root=tmp_path)
    assert config is not None
    assert errors == [f"Missing required file: {config.runtime.install_root / SENTINEL_NAME}"]
    assert check_enabled(config.runtime.install_root).allowed is False

    sentinel.rmdir()
    sentinel.write_text("on\n", encoding="utf-8")

    _, errors = run_preflight(config_path, repo_root=tmp_path)
    assert errors == []
    assert check_enabled(config.runtime.install_root).allowed is True
