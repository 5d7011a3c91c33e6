"""CLI entry point for PRGate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from config import PRGateConfig, load_config_file
from log import setup_logging
from orchestrator import PRGateOrchestrator


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="prgate",
        description="PRGate: build GitHub pull requests on request.",
    )

    parser.add_argument(
        "--repo",
        action="append",
        default=None,
        help="GitHub repo owner/name to watch (repeatable)",
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="JSON config file with global and per-repository settings",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between reconciliations in poll mode (default: 300)",
    )
    parser.add_argument(
        "--use-webhooks",
        action="store_true",
        help="Drive every --repo from webhook deliveries instead of polling",
    )
    parser.add_argument(
        "--webhook-port",
        type=int,
        default=None,
        help="Webhook endpoint port (default: 5556)",
    )
    parser.add_argument(
        "--no-webhook-server",
        action="store_true",
        help="Do not serve the webhook endpoint",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=None,
        help="Path to the JSON state file (default: .prgate/state.json)",
    )
    parser.add_argument(
        "--gh-token",
        default=None,
        help="GitHub token for gh CLI auth (overrides PRGATE_GH_TOKEN and GH_TOKEN)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write JSON logs to this file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log statuses, comments and closes instead of posting them",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile every repository once, then exit",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Reset all persisted state, then exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug-level logging",
    )

    return parser.parse_args(argv)


def _merge_repos(
    file_repos: list[dict[str, Any]], cli_repos: list[str] | None, use_webhooks: bool
) -> list[dict[str, Any]]:
    """Combine repositories from the config file and ``--repo`` flags.

    When ``--repo`` is given only those repositories are watched, keeping
    any settings the config file holds for them.
    """
    by_name = {str(r.get("name", "")).lower(): dict(r) for r in file_repos}
    if cli_repos:
        repos = [by_name.get(name.lower(), {"name": name}) for name in cli_repos]
    else:
        repos = list(by_name.values())
    if use_webhooks:
        for repo in repos:
            repo["use_webhooks"] = True
    return repos


def build_config(args: argparse.Namespace) -> PRGateConfig:
    """Convert parsed CLI args (and the config file) into a :class:`PRGateConfig`.

    Explicit CLI values win over the config file; PRGateConfig supplies
    all remaining defaults.
    """
    kwargs: dict[str, Any] = load_config_file(args.config_file)
    if args.config_file is not None:
        kwargs["config_file"] = args.config_file

    for field in ("poll_interval", "webhook_port", "state_file", "gh_token"):
        val = getattr(args, field)
        if val is not None:
            kwargs[field] = val

    repos = _merge_repos(kwargs.pop("repos", []), args.repo, args.use_webhooks)
    if repos:
        kwargs["repos"] = repos

    if args.no_webhook_server:
        kwargs["webhook_enabled"] = False
    if args.dry_run:
        kwargs["dry_run"] = True

    return PRGateConfig(**kwargs)


async def _run_clean(config: PRGateConfig) -> None:
    """Reset persisted state."""
    from state import StateTracker

    logger = logging.getLogger("prgate")
    logger.info("Resetting PRGate state at %s", config.state_file)
    StateTracker(config.state_file).reset()
    logger.info("Cleanup complete")


async def _run_once(config: PRGateConfig) -> bool:
    """Reconcile every repository once; return *True* if all succeeded."""
    orchestrator = PRGateOrchestrator(config)
    results = await orchestrator.run_once()
    return all(results.values())


async def _run_main(config: PRGateConfig) -> None:
    """Run the orchestrator until SIGINT/SIGTERM."""
    orchestrator = PRGateOrchestrator(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(orchestrator.stop()))

    await orchestrator.run()


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    args = parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, json_output=not args.verbose, log_file=args.log_file)

    config = build_config(args)

    if args.clean:
        asyncio.run(_run_clean(config))
        sys.exit(0)

    if args.once:
        ok = asyncio.run(_run_once(config))
        sys.exit(0 if ok else 1)

    asyncio.run(_run_main(config))


if __name__ == "__main__":
    main()
