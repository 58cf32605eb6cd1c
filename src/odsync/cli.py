#!/usr/bin/env python3
"""Command-line utility for odsync."""

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from odsync.auth import TokenStore
from odsync.config import Config
from odsync.daemon import create_orchestrator
from odsync.errors import StorageError
from odsync.logging_config import setup_logging
from odsync.orchestrator import LAST_SYNC_KEY
from odsync.state_store import SyncStateStore
from odsync.validators import VALIDATORS

EXIT_ERRORS = 1
EXIT_ABORTED = 2


def _format_time(timestamp: Optional[float]) -> str:
    if not timestamp:
        return 'Never'
    return datetime.fromtimestamp(timestamp).strftime('%Y-%m-%d %H:%M:%S')


def _load_config(args) -> Config:
    return Config(Path(args.config_dir).expanduser() if args.config_dir else None)


def _open_store(config: Config) -> Optional[SyncStateStore]:
    try:
        return SyncStateStore(config.state_db_path)
    except StorageError as e:
        print(f"✗ Sync state database error: {e}")
        print("  Run 'odsync reset-state --yes' to back it up and start over.")
        return None


def cmd_sync(args):
    """Run one sync cycle."""
    config = _load_config(args)
    setup_logging(level=args.log_level or config.log_level, log_file=config.log_path)

    if TokenStore(config.token_path).load() is None:
        print("Error: Not authenticated. Store a token before syncing.")
        return EXIT_ERRORS

    store = _open_store(config)
    if store is None:
        return EXIT_ABORTED

    try:
        orchestrator = create_orchestrator(config, store)
        summary = orchestrator.start_cycle()
    except StorageError as e:
        print(f"✗ Sync aborted, state database error: {e}")
        return EXIT_ABORTED
    finally:
        store.close()

    print(f"Sync finished: {summary.describe()}")
    for copy in summary.conflict_copies:
        print(f"  conflict copy kept: {copy}")
    for path in summary.deferred:
        print(f"  deferred to next sync: {path}")
    for failure in summary.errors:
        print(f"  ✗ {failure.path}: {failure.kind}: {failure.message}")

    if summary.aborted:
        print(f"✗ Sync aborted: {summary.abort_reason}")
        return EXIT_ABORTED
    if summary.errors:
        return EXIT_ERRORS
    return 0


def cmd_status(args):
    """Show sync status."""
    config = _load_config(args)
    settings = config.snapshot()

    print("OneDrive Sync Status")
    print("=" * 40)
    print(f"Sync Directory: {settings.sync_root}")
    print(f"Remote Root: /{settings.remote_root}")
    print(f"Sync Interval: {settings.sync_interval} seconds")
    print(f"Client ID: {config.client_id or '(using default)'}")

    if TokenStore(config.token_path).load():
        print("Authentication: ✓ Authenticated")
    else:
        print("Authentication: ✗ Not authenticated")

    store = _open_store(config)
    if store is None:
        return EXIT_ABORTED

    try:
        last_sync = store.get_metadata(LAST_SYNC_KEY)
        counts = store.count_by_state()
        pending = store.items_not_synced()
        sessions = store.active_sessions()
    finally:
        store.close()

    print(f"Files Tracked: {sum(counts.values())}")
    print(f"Last Sync: {_format_time(float(last_sync) if last_sync else None)}")
    for state, count in sorted(counts.items()):
        print(f"  {state}: {count}")

    if pending:
        print(f"\nNot in sync ({len(pending)}):")
        for item in pending[:20]:
            print(f"  {item.sync_state.value:18s} {item.relative_path}")
        if len(pending) > 20:
            print(f"  ... and {len(pending) - 20} more")

    if sessions:
        print(f"\nResumable uploads ({len(sessions)}):")
        for session in sessions:
            print(f"  {session.relative_path}: {session.next_offset}/{session.total_size} bytes")

    return 0


def cmd_config(args):
    """Configure odsync."""
    config = _load_config(args)

    if args.list:
        print("Current Configuration:")
        print("=" * 40)
        for key in sorted(VALIDATORS):
            value = config.get(key)
            print(f"{key} = {value if value not in (None, '') else '(not set)'}")
        return 0

    if args.set:
        status = 0
        for item in args.set:
            if '=' not in item:
                print(f"Error: Invalid format '{item}'. Use key=value")
                status = EXIT_ERRORS
                continue

            key, value = item.split('=', 1)
            if key not in VALIDATORS:
                print(f"Error: Unknown setting '{key}'")
                status = EXIT_ERRORS
                continue

            try:
                config.set(key, value)
            except ValueError as e:
                print(f"✗ {e}")
                status = EXIT_ERRORS
                continue
            print(f"✓ Set {key} = {config.get(key)}")

        return status

    print("Use --list to view config or --set key=value to change config")
    return 0


def cmd_history(args):
    """Show recent sync activity."""
    config = _load_config(args)
    store = _open_store(config)
    if store is None:
        return EXIT_ABORTED

    try:
        entries = store.history(limit=args.limit)
    finally:
        store.close()

    if not entries:
        print("No sync history yet")
        return 0

    for entry in entries:
        line = f"{_format_time(entry.timestamp)}  {entry.action:14s} {entry.status:8s} {entry.path}"
        if entry.error:
            line += f"  ({entry.error})"
        print(line)
    return 0


def cmd_reset_state(args):
    """Move the sync state database aside and start with an empty one."""
    config = _load_config(args)
    db_path = config.state_db_path

    if not args.yes:
        print("This discards all sync history, including conflict records.")
        print("The next sync treats every file as new. Re-run with --yes to confirm.")
        return EXIT_ERRORS

    if not db_path.exists():
        print("No sync state to reset")
        return 0

    stamp = datetime.now().strftime('%Y%m%d-%H%M%S')
    backup = db_path.with_name(f"{db_path.name}.bak-{stamp}")
    db_path.rename(backup)
    # WAL side files belong to the old database
    for suffix in ('-wal', '-shm'):
        side = db_path.with_name(db_path.name + suffix)
        if side.exists():
            side.rename(backup.with_name(backup.name + suffix))

    print(f"✓ Sync state moved to {backup}")
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='odsync - bidirectional OneDrive sync'
    )
    parser.add_argument('--config-dir', help='Configuration directory (default: ~/.config/odsync)')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Sync command
    sync_parser = subparsers.add_parser('sync', help='Run one sync cycle now')
    sync_parser.add_argument('--log-level', help='Override the configured log level')
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show sync status')
    status_parser.set_defaults(func=cmd_status)

    # Config command
    config_parser = subparsers.add_parser('config', help='Configure odsync')
    config_parser.add_argument('--list', action='store_true', help='List configuration')
    config_parser.add_argument('--set', nargs='+', help='Set config (key=value)')
    config_parser.set_defaults(func=cmd_config)

    # History command
    history_parser = subparsers.add_parser('history', help='Show recent sync activity')
    history_parser.add_argument('--limit', type=int, default=50, help='Number of entries')
    history_parser.set_defaults(func=cmd_history)

    # Reset command
    reset_parser = subparsers.add_parser('reset-state',
                                         help='Back up the sync state and start empty')
    reset_parser.add_argument('--yes', action='store_true', help='Confirm the reset')
    reset_parser.set_defaults(func=cmd_reset_state)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
