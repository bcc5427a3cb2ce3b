#!/usr/bin/env python
"""
Ledger CLI - Inspect and administer the auto-heal retry ledger.

Usage:
    healforge ledger list [--active] [--limit N]
    healforge ledger show OWNER/REPO COMMIT_SHA
    healforge ledger history OWNER/REPO COMMIT_SHA
    healforge ledger reset OWNER/REPO COMMIT_SHA
    healforge ledger events [--limit N]
"""

import argparse
import asyncio
import sys
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from healforge.config import HealConfig
from healforge.db import close_db, init_db
from healforge.errors import HealForgeError
from healforge.events import WebhookEventLog
from healforge.ledger import RetryLedger
from healforge.output import (
    console,
    create_table,
    icon,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_success,
    print_table,
    print_warning,
    status_style,
)


def split_repo(slug: str) -> tuple[str, str]:
    """'owner/repo' -> ('owner', 'repo')."""
    owner, sep, repo = slug.partition("/")
    if not sep or not owner or not repo or "/" in repo:
        raise argparse.ArgumentTypeError(f"expected OWNER/REPO, got {slug!r}")
    return owner, repo


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


async def _with_store(
    config: HealConfig, action: Callable[[async_sessionmaker[AsyncSession]], Awaitable[int]]
) -> int:
    session_maker = await init_db(config.database_path)
    try:
        return await action(session_maker)
    finally:
        await close_db()


def cmd_list(args) -> int:
    async def action(session_maker) -> int:
        ledger = RetryLedger(session_maker)
        rows = await ledger.get_active() if args.active else await ledger.list_recent(args.limit)
        if not rows:
            print_info("No retry attempts recorded")
            return 0

        table = create_table(
            title="Active attempts" if args.active else "Recent attempts",
            columns=["Repository", "Commit", "Status", "Attempts", "Last attempt", "Last error"],
        )
        for row in rows:
            style = status_style(row.status)
            error = (row.last_error or "").splitlines()[0][:60] if row.last_error else ""
            table.add_row(
                f"{row.repo_owner}/{row.repo_name}",
                row.short_sha,
                f"[{style}]{row.status}[/]",
                str(row.attempt_count),
                _when(row.last_attempt_at),
                error,
            )
        print_table(table)
        return 0

    return asyncio.run(_with_store(args.config, action))


def cmd_show(args) -> int:
    owner, repo = args.repo

    async def action(session_maker) -> int:
        ledger = RetryLedger(session_maker)
        row = await ledger.get(args.commit, owner, repo)
        if row is None:
            print_warning(f"No ledger entry for {owner}/{repo}@{args.commit[:7]}")
            return 1

        style = status_style(row.status)
        print_header(f"{owner}/{repo}@{row.short_sha}")
        print_key_value_table({
            "Commit": row.commit_sha,
            "Status": f"[{style}]{row.status}[/]",
            "Attempts": f"{row.attempt_count}/{args.config.max_retries}",
            "Workflow": row.workflow_name or "-",
            "Workflow run": row.workflow_run_id or "-",
            "Last attempt": _when(row.last_attempt_at),
            "Created": _when(row.created_at),
        })
        if row.last_error:
            console.print()
            console.print("[hf.muted]Last error:[/]")
            console.print(row.last_error, markup=False)
        return 0

    return asyncio.run(_with_store(args.config, action))


def cmd_history(args) -> int:
    owner, repo = args.repo

    async def action(session_maker) -> int:
        ledger = RetryLedger(session_maker)
        row = await ledger.get(args.commit, owner, repo)
        if row is None:
            print_warning(f"No ledger entry for {owner}/{repo}@{args.commit[:7]}")
            return 1

        history = await ledger.get_heal_history(row.id)
        if not history:
            print_info("No heal attempts recorded yet")
            return 0

        table = create_table(
            title=f"Heal history: {owner}/{repo}@{row.short_sha}",
            columns=["When", "Result", "Before", "After", "Duration", "Error"],
        )
        for h in history:
            result = f"[hf.ok]{icon('check')}[/]" if h.success else f"[hf.err]{icon('cross')}[/]"
            table.add_row(
                _when(h.created_at),
                result,
                (h.commit_sha_before or "-")[:7],
                (h.commit_sha_after or "-")[:7],
                f"{h.duration_ms}ms" if h.duration_ms is not None else "-",
                h.error_message.splitlines()[0][:60] if h.error_message else "",
            )
        print_table(table)
        return 0

    return asyncio.run(_with_store(args.config, action))


def cmd_reset(args) -> int:
    owner, repo = args.repo

    async def action(session_maker) -> int:
        ledger = RetryLedger(session_maker)
        try:
            row = await ledger.reset(args.commit, owner, repo)
        except HealForgeError as e:
            print_error(str(e))
            return 1
        print_success(f"Reset {owner}/{repo}@{row.short_sha}: status pending, 0 attempts")
        return 0

    return asyncio.run(_with_store(args.config, action))


def cmd_events(args) -> int:
    async def action(session_maker) -> int:
        events = await WebhookEventLog(session_maker).recent(args.limit)
        if not events:
            print_info("No webhook events recorded")
            return 0

        table = create_table(title="Webhook events", columns=["ID", "When", "Event", "Repository", "Processed", "Error"])
        for e in events:
            repo = f"{e.repo_owner}/{e.repo_name}" if e.repo_name else (e.repo_owner or "")
            event = f"{e.event_type}.{e.action}" if e.action else e.event_type
            processed = f"[hf.ok]{icon('check')}[/]" if e.processed else f"[hf.warn]{icon('pending')}[/]"
            table.add_row(str(e.id), _when(e.created_at), event, repo, processed, (e.error or "")[:60])
        print_table(table)
        return 0

    return asyncio.run(_with_store(args.config, action))


def build_parser(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    subparsers = parser.add_subparsers(dest="ledger_command", help="Ledger command")

    list_parser = subparsers.add_parser("list", help="List recent ledger entries")
    list_parser.add_argument("--active", action="store_true", help="Only pending and healing entries")
    list_parser.add_argument("--limit", "-n", type=int, default=20, help="Max entries to show")
    list_parser.set_defaults(handler=cmd_list)

    for name, handler, help_text in (
        ("show", cmd_show, "Show one ledger entry"),
        ("history", cmd_history, "Show the heal history of a commit"),
        ("reset", cmd_reset, "Reset a commit to pending with zero attempts"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("repo", type=split_repo, help="OWNER/REPO")
        sub.add_argument("commit", help="Commit SHA")
        sub.set_defaults(handler=handler)

    events_parser = subparsers.add_parser("events", help="Show recent webhook deliveries")
    events_parser.add_argument("--limit", "-n", type=int, default=20, help="Max events to show")
    events_parser.set_defaults(handler=cmd_events)
    return parser


def main(argv=None) -> int:
    parser = build_parser(argparse.ArgumentParser(
        prog="healforge ledger",
        description="Inspect and administer the auto-heal retry ledger",
    ))
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 1
    args.config = HealConfig.load()
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
