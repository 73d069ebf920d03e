from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
import sys
import tempfile

from gitclaw.activity import ActivitySignal
from gitclaw.agent_driver import AgentDriver, AgentFailure
from gitclaw.config import AppConfig, load_config
from gitclaw.events import load_thread_event
from gitclaw.gate import GateDenied, check_enabled
from gitclaw.git_ops import GitStateRepo
from gitclaw.github_gateway import GitHubGateway
from gitclaw.observability import configure_logging
from gitclaw.orchestrator import ProviderKeyMissing, TurnOrchestrator
from gitclaw.preflight import run_preflight
from gitclaw.session_store import SessionStore
from gitclaw.sessions_tui import load_turns, render_turns, run_sessions_tui
from gitclaw.state_committer import StateCommitter


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_GATE_DENIED = 2
_DEFAULT_CONFIG = Path(".gitclaw/config.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gitclaw")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Handle one issue or issue_comment event end to end"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--event-path", type=Path, help="Event payload JSON (default: $GITHUB_EVENT_PATH)"
    )
    run_parser.add_argument(
        "--event-name", type=str, help="issues or issue_comment (default: $GITHUB_EVENT_NAME)"
    )
    run_parser.add_argument("--repo", type=str, help="owner/name (default: $GITHUB_REPOSITORY)")
    run_parser.add_argument(
        "--raw-log",
        type=Path,
        help="Where to keep the engine's raw JSONL stream (default: $RUNNER_TEMP)",
    )
    run_parser.add_argument(
        "--no-echo",
        action="store_true",
        help="Do not mirror the engine stream to stdout",
    )

    check_parser = subparsers.add_parser("check", help="Exit non-zero unless gitclaw is enabled")
    _add_common_arguments(check_parser)

    preflight_parser = subparsers.add_parser(
        "preflight", help="Validate the installation layout and configuration"
    )
    _add_common_arguments(preflight_parser)

    sessions_parser = subparsers.add_parser("sessions", help="Inspect thread session mappings")
    _add_common_arguments(sessions_parser)
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command", required=True)

    list_parser = sessions_subparsers.add_parser("list", help="List thread to session mappings")
    list_parser.add_argument("--json", action="store_true", help="Print mappings as JSON")

    show_parser = sessions_subparsers.add_parser("show", help="Print a thread's recent turns")
    show_parser.add_argument("thread", type=int, help="Issue number")
    show_parser.add_argument("--limit", type=int, default=10, help="Number of turns to show")

    sessions_subparsers.add_parser("tui", help="Browse mappings and conversations interactively")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=_DEFAULT_CONFIG)
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Repository checkout that holds the state (default: current directory)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default="low",
        choices=("low", "high"),
        help="Runtime log verbosity on stderr (bare -v means high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(getattr(args, "verbose", "low"))
    repo_root = (args.repo_root or Path.cwd()).resolve()

    if args.command == "preflight":
        exit_code = _cmd_preflight(args.config, repo_root=repo_root)
    else:
        config = load_config(args.config, repo_root=repo_root)
        if args.command == "run":
            exit_code = _cmd_run(config, args)
        elif args.command == "check":
            exit_code = _cmd_check(config)
        elif args.command == "sessions":
            exit_code = _cmd_sessions(config, args)
        else:
            raise RuntimeError(f"Unknown command: {args.command}")

    if exit_code != EXIT_OK:
        raise SystemExit(exit_code)


def _cmd_run(config: AppConfig, args: argparse.Namespace) -> int:
    event = load_thread_event(
        event_path=args.event_path,
        event_name=args.event_name,
        repo_full_name=args.repo,
        fallback_branch=config.runtime.default_branch,
    )
    github = GitHubGateway(event.owner, event.name)
    store = SessionStore(config.runtime, repo_root=config.repo_root)
    history = GitStateRepo(
        config.repo_root,
        author_name=config.runtime.bot_name,
        author_email=config.runtime.bot_email,
    )
    orchestrator = TurnOrchestrator(
        config,
        github=github,
        store=store,
        driver=AgentDriver(
            config.agent,
            raw_log_path=args.raw_log or _default_raw_log_path(),
            echo=None if args.no_echo else sys.stdout,
        ),
        committer=StateCommitter(config.runtime, history=history, store=store),
        activity=ActivitySignal(github),
    )

    try:
        outcome = orchestrator.run_turn(event)
    except GateDenied as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_GATE_DENIED
    except (AgentFailure, ProviderKeyMissing) as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_FAILED

    if not outcome.ok:
        print(
            f"Issue #{outcome.thread_id} finished with failures: {', '.join(outcome.failures)} "
            f"(reply_posted={outcome.reply_posted}, committed={outcome.committed})",
            file=sys.stderr,
        )
        return EXIT_FAILED
    return EXIT_OK


def _cmd_check(config: AppConfig) -> int:
    decision = check_enabled(config.runtime.install_root)
    if not decision.allowed:
        print(decision.reason, file=sys.stderr)
        return EXIT_GATE_DENIED
    print(decision.reason)
    return EXIT_OK


def _cmd_preflight(config_path: Path, *, repo_root: Path) -> int:
    _, errors = run_preflight(config_path, repo_root=repo_root)
    if errors:
        print("Preflight failed:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_FAILED
    print("Preflight passed.")
    return EXIT_OK


def _cmd_sessions(config: AppConfig, args: argparse.Namespace) -> int:
    store = SessionStore(config.runtime, repo_root=config.repo_root)
    if args.sessions_command == "list":
        _cmd_sessions_list(store, as_json=bool(args.json))
        return EXIT_OK
    if args.sessions_command == "show":
        return _cmd_sessions_show(store, thread_id=int(args.thread), limit=int(args.limit))
    if args.sessions_command == "tui":
        run_sessions_tui(store=store)
        return EXIT_OK
    raise RuntimeError(f"Unknown sessions command: {args.sessions_command}")


def _cmd_sessions_list(store: SessionStore, *, as_json: bool) -> None:
    records = store.list_mappings()
    if as_json:
        payload = [
            {
                "thread_id": record.thread_id,
                "session_path": record.session_path,
                "updated_at": record.updated_at,
                "log_present": store.absolute_log_path(record.session_path).is_file(),
            }
            for record in records
        ]
        print(json.dumps(payload, indent=2))
        return

    if not records:
        print("No thread mappings recorded.")
        return

    for record in records:
        present = store.absolute_log_path(record.session_path).is_file()
        print(
            f"thread={record.thread_id} updated_at={record.updated_at or '-'} "
            f"log_present={'true' if present else 'false'} session_path={record.session_path}"
        )


def _cmd_sessions_show(store: SessionStore, *, thread_id: int, limit: int) -> int:
    record = store.read_mapping(thread_id)
    if record is None:
        print(f"No mapping recorded for issue #{thread_id}.", file=sys.stderr)
        return EXIT_FAILED
    turns = load_turns(store.absolute_log_path(record.session_path), limit=max(limit, 1))
    print(render_turns(record, turns))
    return EXIT_OK


def _default_raw_log_path() -> Path:
    base = os.environ.get("RUNNER_TEMP") or tempfile.gettempdir()
    return Path(base) / "gitclaw-agent-raw.jsonl"
