#!/usr/bin/env python
"""
Heal CLI - Manually trigger one auto-heal cycle for a commit.

Runs the same flow as a workflow_run failure webhook: the retry budget is
checked, a fix is requested from the model and delivered to the branch (or
as a pull request), and the outcome is written to the ledger.

Usage:
    healforge heal OWNER/REPO COMMIT_SHA --error "lint failed" [--run-id N] [--branch NAME]
"""

import argparse
import asyncio
import sys

from healforge.cli.ledger_cli import split_repo
from healforge.config import HealConfig
from healforge.db import close_db, init_db
from healforge.github_client import GitHubClient
from healforge.ledger import RetryLedger
from healforge.llm import ClaudeFixModel
from healforge.orchestrator import AutoHealOrchestrator, HealOutcome, HealStatus
from healforge.output import (
    print_error_panel,
    print_key_value_table,
    print_success_panel,
    print_warning,
    spinner,
)


async def run_heal(args, config: HealConfig) -> HealOutcome:
    owner, repo = args.repo
    session_maker = await init_db(config.database_path)
    try:
        github = GitHubClient.from_config(config)
        orchestrator = AutoHealOrchestrator(
            RetryLedger(session_maker),
            ci=github,
            scm=github,
            model=ClaudeFixModel.from_config(config),
            notifier=github,
            max_retries=config.max_retries,
            fix_delivery=args.delivery or config.fix_delivery,
            min_confidence=config.min_confidence,
        )
        return await orchestrator.manual_trigger(
            owner, repo, args.commit, args.error,
            workflow_run_id=args.run_id,
            head_branch=args.branch,
        )
    finally:
        await close_db()


def cmd_heal(args) -> int:
    config = HealConfig.load()
    if not config.github_token:
        print_error_panel("GITHUB_TOKEN is not set")
        return 1

    with spinner(f"Healing {args.repo[0]}/{args.repo[1]}@{args.commit[:7]}..."):
        outcome = asyncio.run(run_heal(args, config))

    details = {
        "Outcome": outcome.status.value,
        "Ledger commit": outcome.commit_sha,
        "Attempts": f"{outcome.attempt_count}/{config.max_retries}",
    }
    if outcome.fix_commit_sha:
        details["Fix commit"] = outcome.fix_commit_sha
    if outcome.pull_request_number:
        details["Pull request"] = f"#{outcome.pull_request_number}"
    print_key_value_table(details)

    if outcome.status is HealStatus.ATTEMPTED:
        print_success_panel(outcome.message or "Fix delivered", title="Fix delivered")
        return 0
    if outcome.status is HealStatus.SKIPPED:
        print_warning(f"Skipped: {outcome.message}")
        return 0
    print_error_panel(outcome.message or outcome.status.value, title=outcome.status.value.capitalize())
    return 1


def build_parser(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument("repo", type=split_repo, help="OWNER/REPO")
    parser.add_argument("commit", help="Commit SHA that failed")
    parser.add_argument("--error", "-e", required=True, help="Error message describing the failure")
    parser.add_argument("--run-id", type=int, help="Workflow run ID (enables log fetching and re-runs)")
    parser.add_argument("--branch", "-b", help="Branch the fix is pushed to")
    parser.add_argument("--delivery", choices=["commit", "pull_request"], help="Override fix delivery mode")
    parser.set_defaults(handler=cmd_heal)
    return parser


def main(argv=None) -> int:
    parser = build_parser(argparse.ArgumentParser(
        prog="healforge heal",
        description="Manually trigger an auto-heal cycle for a commit",
    ))
    args = parser.parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
