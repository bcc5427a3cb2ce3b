#!/usr/bin/env python
"""
Check CLI - Run the local quality checks with automatic fixing.

Usage:
    healforge check [--cwd DIR] [--max-retries N] [--no-fix] [--dry-run] [--stage]

Exit code is 0 when every check passes and 1 otherwise.
"""

import argparse
import sys
from pathlib import Path

from healforge.check_runner import (
    RunAllChecksResult,
    has_uncommitted_changes,
    run_all_checks,
    stage_all_changes,
)
from healforge.output import (
    console,
    create_table,
    icon,
    print_error_panel,
    print_header,
    print_info,
    print_success,
    print_success_panel,
    print_table,
    print_warning,
)


def print_summary(result: RunAllChecksResult) -> None:
    """Print the per-check results and applied fixes of the last cycle."""
    if result.results:
        table = create_table(title="Checks", columns=["Check", "Result", "Duration"])
        for r in result.results:
            outcome = f"[hf.ok]{icon('check')} passed[/]" if r.success else f"[hf.err]{icon('cross')} failed[/]"
            table.add_row(r.check.display_name, outcome, f"{r.duration_ms}ms")
        print_table(table)

    if result.applied_fixes:
        console.print()
        table = create_table(title="Fixes applied", columns=["Check", "Command", "At"])
        for fix in result.applied_fixes:
            table.add_row(fix.display_name, fix.command, fix.timestamp.strftime("%H:%M:%S"))
        print_table(table)

    console.print()
    console.print(
        f"  [hf.muted]Cycles:[/] [hf.number]{result.total_attempts}[/]   "
        f"[hf.muted]Fixes:[/] [hf.number]{result.fixes_applied}[/]"
    )


def cmd_check(args) -> int:
    cwd = Path(args.cwd).resolve()
    if not cwd.is_dir():
        print_error_panel(f"Not a directory: {cwd}")
        return 1

    print_header(f"Quality checks: {cwd.name}")
    if args.dry_run:
        print_info("Dry run: fixes will be listed, not applied")

    result = run_all_checks(
        cwd,
        max_retries=args.max_retries,
        auto_fix=not args.no_fix,
        dry_run=args.dry_run,
    )

    console.print()
    print_summary(result)
    console.print()

    if result.success:
        print_success_panel("All checks passed")
        if args.stage and result.fixes_applied and has_uncommitted_changes(cwd):
            if stage_all_changes(cwd):
                print_success("Staged auto-fix changes")
            else:
                print_warning("Could not stage auto-fix changes")
        return 0

    if result.pending_fixes:
        print_warning(f"{len(result.pending_fixes)} fix(es) pending")
        return 1

    print_error_panel(str(result.error) if result.error else "Checks failed")
    return 1


def build_parser(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument("--cwd", default=".", help="Project directory (default: current dir)")
    parser.add_argument("--max-retries", type=int, default=10, help="Maximum validation cycles")
    parser.add_argument("--no-fix", action="store_true", help="Report failures without fixing")
    parser.add_argument("--dry-run", action="store_true", help="Show fixes that would be applied")
    parser.add_argument("--stage", action="store_true", help="git add changes made by auto-fixes")
    parser.set_defaults(handler=cmd_check)
    return parser


def main(argv=None) -> int:
    parser = build_parser(argparse.ArgumentParser(
        prog="healforge check",
        description="Run typecheck, lint, format, test and build with auto-fix",
    ))
    args = parser.parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
