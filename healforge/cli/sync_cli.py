#!/usr/bin/env python
"""
Sync CLI - Share patterns with the community pattern registry.

Usage:
    healforge sync push FILE [FILE ...] [--contributor-id ID] [--type TYPE]
    healforge sync pull [--type TYPE] [--limit N] [--offset N] [--since ISO] [--output DIR]
    healforge sync health

Each pushed FILE holds one pattern object or a list of them:

    {"type": "fix", "data": {"name": "...", "description": "..."}}

Missing ids are generated and missing hashes are computed from the
canonical JSON of the pattern data, so re-pushing the same content is a
no-op on the registry.
"""

import argparse
import asyncio
import hashlib
import json
import os
import sys
import uuid
from pathlib import Path
from typing import Any

from healforge.config import RegistryConfig
from healforge.errors import HealForgeError, RateLimitedError
from healforge.registry.client import RegistryClient
from healforge.registry.types import RegistryPattern
from healforge.output import (
    create_table,
    print_error,
    print_error_panel,
    print_info,
    print_key_value_table,
    print_muted,
    print_success,
    print_table,
    print_warning,
    spinner,
)

CONTRIBUTOR_ID_ENV = "HEALFORGE_CONTRIBUTOR_ID"
PATTERN_TYPES = ("fix", "blueprint", "solution")


def pattern_hash(data: dict[str, Any]) -> str:
    """sha256 of the canonical (sorted, compact) JSON of the pattern data."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_patterns(path: Path, default_type: str) -> list[RegistryPattern]:
    """Read one pattern or a list of patterns from a JSON file."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    items = raw if isinstance(raw, list) else [raw]

    patterns = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("data"), dict):
            raise ValueError(f"{path}: each pattern must be an object with a 'data' object")
        data = item["data"]
        patterns.append(RegistryPattern(
            id=item.get("id") or str(uuid.uuid4()),
            type=item.get("type") or default_type,
            data=data,
            hash=item.get("hash") or pattern_hash(data),
        ))
    return patterns


def _client() -> RegistryClient:
    return RegistryClient.from_config(RegistryConfig.load())


def cmd_push(args) -> int:
    contributor_id = args.contributor_id or os.environ.get(CONTRIBUTOR_ID_ENV)
    if not contributor_id:
        print_error(f"A contributor ID is required (--contributor-id or {CONTRIBUTOR_ID_ENV})")
        return 1

    patterns: list[RegistryPattern] = []
    for path in args.files:
        try:
            patterns.extend(load_patterns(Path(path), args.type))
        except (OSError, ValueError) as e:
            print_error(f"Could not read {path}: {e}")
            return 1

    if not patterns:
        print_warning("Nothing to push")
        return 0

    try:
        with spinner(f"Pushing {len(patterns)} pattern(s)..."):
            result = asyncio.run(_client().push(patterns, contributor_id))
    except RateLimitedError as e:
        print_error_panel(f"{e}. Try again in {e.time_until_reset()}.", title="Rate limited")
        return 1
    except HealForgeError as e:
        print_error_panel(str(e), title="Push failed")
        return 1

    print_success(f"Pushed {result.pushed}, skipped {result.skipped} duplicate(s)")
    for error in result.errors:
        print_error(error)
    print_muted(f"{result.rate_limit.remaining} push(es) left in this window")
    return 1 if result.errors else 0


def cmd_pull(args) -> int:
    try:
        with spinner("Pulling patterns..."):
            result = asyncio.run(_client().pull(args.type, args.limit, args.offset, args.since))
    except HealForgeError as e:
        print_error_panel(str(e), title="Pull failed")
        return 1

    if not result.patterns:
        print_info("No patterns found")
        return 0

    if args.output:
        out_dir = Path(args.output)
        for pattern in result.patterns:
            target = out_dir / pattern.type / f"{pattern.id}.json"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(pattern.to_dict(), indent=2), encoding="utf-8")
        print_success(f"Wrote {len(result.patterns)} pattern(s) to {out_dir}")
    else:
        table = create_table(title="Patterns", columns=["ID", "Type", "Name", "Created"])
        for pattern in result.patterns:
            table.add_row(pattern.id, pattern.type, str(pattern.data.get("name", "")), pattern.created_at or "-")
        print_table(table)

    page = result.pagination
    print_muted(f"Showing {page.offset + 1}-{page.offset + len(result.patterns)} of {page.total}")
    if page.has_more:
        print_muted(f"More available: --offset {page.offset + len(result.patterns)}")
    return 0


def cmd_health(args) -> int:
    client = _client()
    healthy = asyncio.run(client.health_check())
    print_key_value_table({"Registry": client.base_url, "Healthy": "yes" if healthy else "no"})
    return 0 if healthy else 1


def build_parser(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    subparsers = parser.add_subparsers(dest="sync_command", help="Sync command")

    push_parser = subparsers.add_parser("push", help="Push pattern files to the registry")
    push_parser.add_argument("files", nargs="+", help="JSON pattern files")
    push_parser.add_argument("--contributor-id", help=f"Contributor ID (default: ${CONTRIBUTOR_ID_ENV})")
    push_parser.add_argument("--type", choices=PATTERN_TYPES, default="fix", help="Type for patterns without one")
    push_parser.set_defaults(handler=cmd_push)

    pull_parser = subparsers.add_parser("pull", help="Pull patterns from the registry")
    pull_parser.add_argument("--type", "-t", choices=PATTERN_TYPES, help="Filter by pattern type")
    pull_parser.add_argument("--limit", "-n", type=int, help="Page size (1-100)")
    pull_parser.add_argument("--offset", type=int, help="Page offset")
    pull_parser.add_argument("--since", help="Only patterns created after this ISO timestamp")
    pull_parser.add_argument("--output", "-o", help="Write patterns as JSON files under this directory")
    pull_parser.set_defaults(handler=cmd_pull)

    health_parser = subparsers.add_parser("health", help="Check registry availability")
    health_parser.set_defaults(handler=cmd_health)
    return parser


def main(argv=None) -> int:
    parser = build_parser(argparse.ArgumentParser(
        prog="healforge sync",
        description="Share patterns with the community pattern registry",
    ))
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 1
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
