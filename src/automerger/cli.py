from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from threading import Event, Timer

from automerger.config import AppConfig, load_config
from automerger.github_gateway import GitHubGateway
from automerger.observability import configure_logging, log_event
from automerger.orchestrator import AutoMerger, MergeResult


LOGGER = logging.getLogger("automerger.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="automerger")
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge_parser = subparsers.add_parser(
        "merge", help="Merge pull requests that satisfy the configured policy"
    )
    merge_parser.add_argument("--config", type=Path, default=Path("automerger.toml"))
    merge_parser.add_argument(
        "--pr",
        type=int,
        action="append",
        required=True,
        help="Pull request number to merge (repeatable)",
    )
    merge_parser.add_argument(
        "--timeout-seconds",
        type=float,
        help="Abort waiting for readiness or merge retries after this many seconds",
    )
    merge_parser.add_argument(
        "--json",
        action="store_true",
        help="Print per pull request results as JSON",
    )
    merge_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    verbose = True if args.verbose else config.runtime.verbose
    configure_logging(verbose, log_dir=config.runtime.log_dir)

    if args.command == "merge":
        _cmd_merge(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_merge(config: AppConfig, args: argparse.Namespace) -> None:
    pr_numbers = tuple(dict.fromkeys(args.pr))
    timeout_seconds = (
        float(args.timeout_seconds)
        if args.timeout_seconds is not None
        else config.runtime.timeout_seconds
    )
    stop_event = Event()
    merger = AutoMerger(
        config.merge,
        github=GitHubGateway(config.repo.owner, config.repo.name),
        stop_event=stop_event,
    )

    log_event(
        LOGGER,
        "merge_run_started",
        repo=config.repo.full_name,
        pr_numbers=pr_numbers,
        workers=config.runtime.workers,
        timeout_seconds=timeout_seconds,
    )
    deadline: Timer | None = None
    if timeout_seconds is not None:
        deadline = Timer(timeout_seconds, stop_event.set)
        deadline.daemon = True
        deadline.start()
    try:
        results = merger.run(pr_numbers, workers=config.runtime.workers)
    finally:
        if deadline is not None:
            deadline.cancel()

    _print_results(results, as_json=bool(args.json))
    if any(result.error is not None for result in results):
        raise SystemExit(1)


def _print_results(results: tuple[MergeResult, ...], *, as_json: bool) -> None:
    if as_json:
        payload = [
            {"pr_number": result.pr_number, "merged": result.merged, "error": result.error}
            for result in results
        ]
        print(json.dumps(payload, indent=2))
        return
    for result in results:
        if result.error is not None:
            print(f"#{result.pr_number}: error: {result.error}")
        elif result.merged:
            print(f"#{result.pr_number}: merged")
        else:
            print(f"#{result.pr_number}: not merged")
