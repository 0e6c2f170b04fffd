#!/usr/bin/env python3
"""
Checklist Sync - command line client.

Wires the local store, remote store, identity session, sync engine, status
publisher and telemetry together and exposes them as subcommands.

Usage:
    checklist-sync login --email you@example.com
    checklist-sync login --provider google      # prints the sign-in URL
    checklist-sync callback URL                 # finish a redirect sign-in
    checklist-sync sync                         # pull, merge and push once
    checklist-sync run                          # keep syncing until interrupted
    checklist-sync export backup.json
    checklist-sync import backup.json
"""

import argparse
import asyncio
import getpass
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import httpx

from .auth import TokenManager
from .config import SyncSettings, get_settings
from .engine import SyncEngine
from .errors import ImportFormatError, SyncError
from .models import Collection, SyncState
from .remote import RestRemoteStore
from .session import IdentitySession
from .status import StatusIndicator, StatusPublisher, StatusSurface
from .store import LocalStore
from .telemetry import UsageTelemetry

logger = logging.getLogger("checklist")


class ConsoleStatusSurface:
    """Writes sync indicator changes to the log."""

    def render(self, indicator: StatusIndicator) -> None:
        logger.info(f"[{indicator.label}] {indicator.title}")


class ChecklistApp:
    """Explicitly constructed set of client services."""

    def __init__(
        self,
        config: Optional[SyncSettings] = None,
        surface: Optional[StatusSurface] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_settings()
        self.surface = surface or ConsoleStatusSurface()

        self.store = LocalStore(self.config.store_path)
        self.tokens = TokenManager(self.store, self.config, transport=transport)
        self.remote = RestRemoteStore(self.config, self.tokens, transport=transport)
        self.session = IdentitySession(self.tokens, self.remote, self.store, self.config)
        self.publisher = StatusPublisher(lambda: self.surface, self.config.status_retry_delay)
        self.engine = SyncEngine(
            self.store,
            self.remote,
            self.session,
            publisher=self.publisher,
            config=self.config,
        )
        self.session.bind_engine(self.engine)
        self.telemetry = UsageTelemetry(self.session, self.remote)

    async def close(self) -> None:
        """Stop syncing and release network resources."""
        await self.engine.stop()
        await self.telemetry.flush()
        self.publisher.close()
        await self.remote.close()
        await self.tokens.close()


# =============================================================================
# Commands
# =============================================================================

async def cmd_login(app: ChecklistApp, args: argparse.Namespace) -> int:
    if args.provider:
        print(app.session.sign_in(args.provider))
        print("Open the URL above, then run: checklist-sync callback <redirect-url>")
        return 0

    email = args.email or input("Email: ")
    password = args.password or getpass.getpass("Password: ")
    session = await app.session.sign_in_with_password(email, password)
    app.telemetry.track_event("sign_in", {"method": "password"})
    print(f"Signed in as {session.email} - sync {app.engine.state.value}")
    return 0


async def cmd_callback(app: ChecklistApp, args: argparse.Namespace) -> int:
    session = await app.session.complete_sign_in(args.url)
    app.telemetry.track_event("sign_in", {"method": "redirect"})
    print(f"Signed in as {session.email} - sync {app.engine.state.value}")
    return 0


async def cmd_logout(app: ChecklistApp, args: argparse.Namespace) -> int:
    await app.session.sign_out()
    print("Signed out. Local data was backed up.")
    return 0


async def cmd_sync(app: ChecklistApp, args: argparse.Namespace) -> int:
    session = await app.session.initialize()
    if session is None:
        print("Not signed in.")
        return 1
    print(f"Sync {app.engine.state.value}")
    return 0 if app.engine.state is SyncState.SYNCED else 1


async def cmd_status(app: ChecklistApp, args: argparse.Namespace) -> int:
    snapshot = app.store.load()
    print("\n=== Sync Status ===")
    print(f"Signed in: {app.tokens.load_token() is not None}")
    for collection in Collection:
        print(f"{collection.value.capitalize()}: {len(snapshot.get(collection))}")
    print(f"Last synced: {app.store.get_metadata('last_synced_at') or 'Never'}")
    pending = snapshot.fingerprint() != snapshot.last_synced_hash
    print(f"Unpushed changes: {pending}")
    return 0


async def cmd_export(app: ChecklistApp, args: argparse.Namespace) -> int:
    args.file.write_text(app.store.export_json(), encoding="utf-8")
    print(f"Exported to {args.file}")
    return 0


async def cmd_import(app: ChecklistApp, args: argparse.Namespace) -> int:
    try:
        app.store.import_json(args.file.read_text(encoding="utf-8"))
    except (ImportFormatError, OSError) as e:
        print(f"Import failed: {e}")
        return 1
    print("Data imported successfully.")
    return 0


async def cmd_restore_backup(app: ChecklistApp, args: argparse.Namespace) -> int:
    await app.session.initialize()
    if not await app.engine.restore_backup():
        print("No backup found.")
        return 1
    print("Backup restored.")
    return 0


async def cmd_run(app: ChecklistApp, args: argparse.Namespace) -> int:
    session = await app.session.initialize()
    if session is None:
        print("Not signed in.")
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    app.store.add_listener(
        lambda snapshot, reason: logger.info(
            f"Snapshot reloaded ({reason}): {len(snapshot.tasks)} tasks"
        )
    )
    logger.info("Syncing in the background, press Ctrl+C to stop")
    await stop.wait()
    logger.info("Received shutdown signal")
    return 0


COMMANDS = {
    "login": cmd_login,
    "callback": cmd_callback,
    "logout": cmd_logout,
    "sync": cmd_sync,
    "status": cmd_status,
    "export": cmd_export,
    "import": cmd_import,
    "restore-backup": cmd_restore_backup,
    "run": cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="checklist-sync",
        description="Checklist offline-first sync client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--data-dir", type=Path, default=None, help="Local data directory")
    parser.add_argument("--api-url", default=None, help="Backend API base URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in")
    login.add_argument("--email")
    login.add_argument("--password")
    login.add_argument("--provider", help="Start a redirect sign-in with this provider")

    callback = sub.add_parser("callback", help="Finish a redirect sign-in")
    callback.add_argument("url")

    sub.add_parser("logout", help="Back up local data and sign out")
    sub.add_parser("sync", help="Pull, merge and push once")
    sub.add_parser("status", help="Show local sync status")

    export = sub.add_parser("export", help="Export local data to a JSON file")
    export.add_argument("file", type=Path)

    import_ = sub.add_parser("import", help="Replace local data with a JSON export")
    import_.add_argument("file", type=Path)

    sub.add_parser("restore-backup", help="Merge the sign-out backup into local data")
    sub.add_parser("run", help="Keep syncing until interrupted")
    return parser


async def run(args: argparse.Namespace) -> int:
    overrides = {}
    if args.data_dir is not None:
        overrides["data_dir"] = args.data_dir
    if args.api_url is not None:
        overrides["api_base_url"] = args.api_url
    config = SyncSettings(**overrides) if overrides else get_settings()

    app = ChecklistApp(config)
    try:
        return await COMMANDS[args.command](app, args)
    except SyncError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await app.close()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
