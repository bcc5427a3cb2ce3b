"""
Entry point for running healforge as a module.

Usage:
    python -m healforge serve [--host HOST] [--port PORT]   # Webhook + registry server
    python -m healforge check [...]                         # Local quality checks
    python -m healforge ledger list|show|history|reset      # Retry ledger admin
    python -m healforge heal OWNER/REPO SHA --error MSG     # Manual heal trigger
    python -m healforge sync push|pull|health               # Pattern registry
"""

import argparse
import logging
import sys

from healforge import __version__

COMMANDS = ("serve", "check", "ledger", "heal", "sync")


def serve(argv) -> int:
    import uvicorn

    from healforge.config import HealConfig
    from healforge.errors import ValidationError
    from healforge.output import print_error_panel, print_warning, setup_rich_logging
    from healforge.server import create_app

    parser = argparse.ArgumentParser(prog="healforge serve", description="Run the HealForge server")
    parser.add_argument("--host", help="Bind address (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port (default: $PORT or 3000)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.debug else logging.INFO)
    try:
        config = HealConfig.load()
    except ValidationError as e:
        print_error_panel("\n".join([str(e), *e.details]), title="Invalid configuration")
        return 1

    if not config.webhook_secret:
        print_warning("GITHUB_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")
    if not config.github_token:
        print_warning("GITHUB_TOKEN is not set; auto-heal calls to GitHub will fail")

    uvicorn.run(
        create_app(config),
        host=args.host or config.host,
        port=args.port or config.port,
        log_config=None,
    )
    return 0


def main() -> int:
    """Main entry point with subcommand support."""
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(__doc__)
        return 0 if len(sys.argv) >= 2 else 1

    cmd, argv = sys.argv[1].lower(), sys.argv[2:]

    if cmd in ("-v", "--version", "version"):
        print(f"healforge {__version__}")
        return 0

    if cmd == "serve":
        return serve(argv)

    elif cmd == "check":
        from healforge.cli.check_cli import main as check_main
        return check_main(argv)

    elif cmd == "ledger":
        from healforge.cli.ledger_cli import main as ledger_main
        return ledger_main(argv)

    elif cmd == "heal":
        from healforge.cli.heal_cli import main as heal_main
        return heal_main(argv)

    elif cmd == "sync":
        from healforge.cli.sync_cli import main as sync_main
        return sync_main(argv)

    print(f"Unknown command: {cmd}. Expected one of: {', '.join(COMMANDS)}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())
