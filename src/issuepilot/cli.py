from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

import uvicorn

from issuepilot.config import AppConfig, ConfigError, load_config
from issuepilot.container_runtime import DockerRuntime
from issuepilot.observability import configure_logging
from issuepilot.orchestrator import Orchestrator
from issuepilot.state import StateStore
from issuepilot.watermarks import WatermarkStore
from issuepilot.webhooks import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="issuepilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Run the orchestrator with its status/webhook HTTP endpoint"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll and health check without starting the HTTP endpoint",
    )

    serve_parser = subparsers.add_parser(
        "serve", help="Like run, with optional overrides for the HTTP bind address"
    )
    _add_common_arguments(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Override server.host")
    serve_parser.add_argument("--port", type=int, help="Override server.port")

    check_parser = subparsers.add_parser("check-config", help="Validate the configuration file")
    _add_common_arguments(check_parser)

    watermarks_parser = subparsers.add_parser(
        "watermarks", help="Show persisted polling watermarks"
    )
    _add_common_arguments(watermarks_parser)
    watermarks_parser.add_argument(
        "--json",
        action="store_true",
        help="Print watermarks as JSON",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("issuepilot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default level: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    if args.command == "check-config":
        _cmd_check_config(config)
        return

    configure_logging(args.verbose, state_dir=config.runtime.base_dir)
    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "serve":
        _cmd_serve(config, host=args.host, port=args.port)
        return
    if args.command == "watermarks":
        _cmd_watermarks(config, as_json=bool(args.json))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_check_config(config: AppConfig) -> None:
    runtime = config.runtime
    print(f"Configuration OK: mode={runtime.mode} max_concurrent={runtime.max_concurrent}")
    print(f"Base dir: {runtime.base_dir}")
    for repo in config.repos:
        state = "enabled" if repo.enabled else "disabled"
        template = repo.prompt_template or "default"
        print(
            f"Repo: {repo.full_name} ({state}) trigger={repo.trigger_comment!r} prompt={template}"
        )
    print(f"Image: {config.containers.base_image} network={config.containers.network}")
    print(f"Server: {config.server.host}:{config.server.port} public_url={config.server.public_url}")
    print(f"Prompts: {', '.join(name for name, _ in config.prompts)}")
    github_token = "set" if config.github.token else "unset"
    agent_api_key = "set" if config.agent.api_key else "unset"
    print(f"Credentials: github_token={github_token} agent_api_key={agent_api_key}")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    orchestrator = _build_orchestrator(config)
    if once:
        orchestrator.run_once()
        stats = orchestrator.registry.stats()
        print(f"Active work: {stats.active}/{stats.max_concurrent}")
        return
    _serve(config, orchestrator, host=config.server.host, port=config.server.port)


def _cmd_serve(config: AppConfig, *, host: str | None, port: int | None) -> None:
    orchestrator = _build_orchestrator(config)
    _serve(
        config,
        orchestrator,
        host=host or config.server.host,
        port=port if port is not None else config.server.port,
    )


def _cmd_watermarks(config: AppConfig, *, as_json: bool) -> None:
    db_path = _state_db_path(config)
    if not db_path.exists():
        if as_json:
            print(json.dumps({}, indent=2))
        else:
            print(f"No state database at {db_path}")
        return
    snapshot = WatermarkStore(persistence=StateStore(db_path)).snapshot()
    if as_json:
        print(json.dumps(snapshot, indent=2, sort_keys=True))
        return
    if not snapshot:
        print("No watermarks recorded.")
        return
    for repo_full_name, marks in snapshot.items():
        print(f"{repo_full_name}")
        print(f"  issues polled at: {marks['issues_polled_at'] or '<never>'}")
        print(f"  comment watermarks: {json.dumps(marks['comment_ids'], sort_keys=True)}")
        print(f"  review watermarks: {json.dumps(marks['review_ids'], sort_keys=True)}")
        print(f"  known pull requests: {marks['known_pull_requests']}")


def _build_orchestrator(config: AppConfig) -> Orchestrator:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    persistence = StateStore(_state_db_path(config)) if config.runtime.persist_watermarks else None
    return Orchestrator(
        config,
        runtime=DockerRuntime(),
        watermarks=WatermarkStore(persistence=persistence),
    )


def _serve(config: AppConfig, orchestrator: Orchestrator, *, host: str, port: int) -> None:
    app = create_app(config, orchestrator, manage_orchestrator=True)
    uvicorn.run(app, host=host, port=port, log_config=None)


def _state_db_path(config: AppConfig) -> Path:
    return config.runtime.base_dir / "state.db"
