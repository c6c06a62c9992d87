#!/usr/bin/env python3
"""CertVault Admin CLI.

Offline inspection of backup bundles, local backup directories and
certificate history.

Usage:
    certvault-admin validate-backup ./certvault-backup.json
    certvault-admin list-backups ./backups
    certvault-admin history web.lab.local --limit 20

Exit Codes:
    0 - Success
    1 - Invalid backup / operation failed
    2 - Configuration error
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

from certvault.config import get_settings
from certvault.core.backup import backup_service
from certvault.core.errors import CertVaultError
from certvault.core.history import history_service
from certvault.database import close_db, get_session_maker


# =============================================================================
# Terminal Colors
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

    @classmethod
    def disable(cls):
        for attr in ["RED", "GREEN", "YELLOW", "CYAN", "BOLD", "RESET"]:
            setattr(cls, attr, "")


def colored(text: str, color: str) -> str:
    return f"{color}{text}{Colors.RESET}"


def format_timestamp(timestamp: int | None) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


# =============================================================================
# Commands
# =============================================================================

def cmd_validate_backup(args) -> int:
    try:
        result = backup_service.validate_file(args.path)
    except CertVaultError as e:
        print(colored(f"Error: {e.message}", Colors.RED), file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps(result.model_dump(), indent=2))
        return 0 if result.valid else 1

    print(f"\n{colored('Backup Validation', Colors.BOLD + Colors.CYAN)}")
    print(f"  File:             {args.path}")
    print(f"  Version:          {result.version or '-'}")
    print(f"  Exported:         {format_timestamp(result.exported_at)}")
    print(f"  Certificates:     {result.certificate_count}")
    print(f"  Encrypted keys:   {'yes' if result.has_encrypted_keys else 'no'}")
    print(f"  Embedded key:     {'yes' if result.has_encryption_key else 'no'}")

    if result.valid:
        print(f"\n{colored('Backup is valid', Colors.GREEN)}")
        return 0

    print(f"\n{colored('Backup is invalid:', Colors.RED)}")
    for error in result.errors:
        print(f"  - {error}")
    return 1


def cmd_list_backups(args) -> int:
    try:
        backups = backup_service.list_local_backups(args.directory)
    except CertVaultError as e:
        print(colored(f"Error: {e.message}", Colors.RED), file=sys.stderr)
        return 2

    if args.format == "json":
        print(json.dumps([info.model_dump() for info in backups], indent=2))
        return 0

    if not backups:
        print(colored("No local backups found", Colors.YELLOW))
        return 0

    print(f"\n{colored('Local Backups', Colors.BOLD + Colors.CYAN)}")
    for info in backups:
        print(
            f"  {info.filename}  {info.type:<6}  {format_timestamp(info.timestamp)}  "
            f"{info.certificate_count} cert(s)  {info.size} bytes"
        )
    return 0


def _missing_database() -> str | None:
    """Report a SQLite file that does not exist instead of creating it."""
    url = make_url(get_settings().database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return None
    if not Path(url.database).is_file():
        return f"Database not found: {url.database}"
    return None


async def _load_history(hostname: str, limit: int | None):
    try:
        async with get_session_maker()() as db:
            return await history_service.list_entries(db, hostname, limit)
    finally:
        await close_db()


def cmd_history(args) -> int:
    missing = _missing_database()
    if missing:
        print(colored(f"Error: {missing}", Colors.RED), file=sys.stderr)
        return 2

    try:
        entries = asyncio.run(_load_history(args.hostname, args.limit))
    except CertVaultError as e:
        print(colored(f"Error: {e.message}", Colors.RED), file=sys.stderr)
        return 1
    except SQLAlchemyError as e:
        print(colored(f"Error: database is not usable: {e}", Colors.RED), file=sys.stderr)
        return 2

    if args.format == "json":
        print(json.dumps(
            [
                {
                    "id": entry.id,
                    "event_type": entry.event_type,
                    "message": entry.message,
                    "created_at": entry.created_at.isoformat(),
                }
                for entry in entries
            ],
            indent=2,
        ))
        return 0

    if not entries:
        print(colored(f"No history for {args.hostname}", Colors.YELLOW))
        return 0

    print(f"\n{colored(f'History for {args.hostname}', Colors.BOLD + Colors.CYAN)}")
    for entry in entries:
        print(f"  {entry.created_at:%Y-%m-%d %H:%M:%S}  {entry.event_type:<22} {entry.message}")
    return 0


# =============================================================================
# Main
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certvault-admin",
        description="CertVault administration tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  certvault-admin validate-backup backup.json
  certvault-admin list-backups /var/lib/certvault/backups
  certvault-admin history web.lab.local --limit 10
        """
    )

    parser.add_argument("--no-color", action="store_true", help="Disable colored output")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    validate_parser = subparsers.add_parser("validate-backup", help="Check a backup bundle file")
    validate_parser.add_argument("path", help="Backup JSON file")
    validate_parser.add_argument("--format", choices=["text", "json"], default="text")

    list_parser = subparsers.add_parser("list-backups", help="List local backup files")
    list_parser.add_argument("directory", nargs="?", help="Backup directory (default: BACKUP_DIR)")
    list_parser.add_argument("--format", choices=["text", "json"], default="text")

    history_parser = subparsers.add_parser("history", help="Show certificate history")
    history_parser.add_argument("hostname", help="Certificate hostname")
    history_parser.add_argument("--limit", "-n", type=int, help="Maximum entries (default: 50)")
    history_parser.add_argument("--format", choices=["text", "json"], default="text")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    if args.command == "validate-backup":
        return cmd_validate_backup(args)
    elif args.command == "list-backups":
        return cmd_list_backups(args)
    elif args.command == "history":
        return cmd_history(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
