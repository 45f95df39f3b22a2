"""Forkline diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path

from forkline.config import ForklineSettings
from forkline.git import GitNotFoundError, GitRunner
from forkline.storage import ChromaStore, ChromaUnavailableError
from forkline.tools import worktree_payload
from forkline.worktrees import WorktreeHealthChecker


def load_store(settings: ForklineSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def load_runner(settings: ForklineSettings) -> GitRunner:
    try:
        return GitRunner(settings.git_path)
    except GitNotFoundError as exc:
        print(f"Git unavailable: {exc}")
        raise SystemExit(1)


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = ForklineSettings()
    store = load_store(settings)
    try:
        records = store.list_worktrees(args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.status:
        records = [record for record in records if record.status == args.status]
    print(json.dumps([worktree_payload(record) for record in records], indent=2))


def cmd_health(args: argparse.Namespace) -> None:
    settings = ForklineSettings()
    store = load_store(settings)
    runner = load_runner(settings)
    project_path = Path(args.project_path or settings.project_path).expanduser().resolve()
    checker = WorktreeHealthChecker(
        project_path,
        store,
        runner=runner,
        control_dir=settings.control_dir,
        abandoned_after=timedelta(hours=settings.abandoned_after_hours),
    )

    health = asyncio.run(checker.check_health(args.session_id))
    payload = {
        "session_id": args.session_id,
        "project_path": str(project_path),
        "healthy": health.healthy,
        "is_git_repo": health.is_git_repo,
        "git_worktrees": len(health.git_worktrees),
        "recorded_worktrees": len(health.store_worktrees),
        "issues": [asdict(issue) for issue in health.issues],
    }
    if args.repair and health.issues:
        repaired = asyncio.run(checker.repair(health.issues))
        payload["repair"] = asdict(repaired)

    print(json.dumps(payload, indent=2))
    if not health.is_git_repo:
        raise SystemExit(1)


def cmd_events(args: argparse.Namespace) -> None:
    settings = ForklineSettings()
    store = load_store(settings)
    filters = {"event_type": args.event_type} if args.event_type else None
    try:
        events = store.search_events(args.query, filters=filters)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    events.sort(key=lambda event: event.timestamp)
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]

    payload = [
        {
            "event_id": event.id,
            "stream_id": event.stream_id,
            "event_type": event.event_type,
            "status": event.metadata.get("status"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forkline diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_worktrees = sub.add_parser("worktrees", help="List recorded worktrees")
    p_worktrees.add_argument("--session-id")
    p_worktrees.add_argument("--status", choices=["active", "merged", "abandoned"])
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_health = sub.add_parser("health", help="Check git worktrees against recorded state")
    p_health.add_argument("--session-id", required=True)
    p_health.add_argument("--project-path", help="Defaults to FORKLINE_PROJECT_PATH")
    p_health.add_argument("--repair", action="store_true", help="Fix auto-fixable issues")
    p_health.set_defaults(func=cmd_health)

    p_events = sub.add_parser("events", help="Search the state store's event log")
    p_events.add_argument("query", nargs="?")
    p_events.add_argument("--event-type")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
