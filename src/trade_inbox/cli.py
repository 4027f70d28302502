"""Command-line entry point for trade-inbox."""

from __future__ import annotations

import argparse
import uuid
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path

from trade_inbox.core import AppSettings, configure_logging, load_app_settings
from trade_inbox.core.models import MailboxConfiguration
from trade_inbox.ingestion import (
    EmailParser,
    IntervalPacer,
    MailboxSyncManager,
    detection_profile,
    identify,
    validate,
)
from trade_inbox.storage import SqliteSyncRepository
from trade_inbox.transport import ImapClient

COMMANDS = ["info", "sync", "test-config", "stats", "add-config", "identify"]


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Brokerage confirmation mailbox sync and duplicate checks"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=COMMANDS,
        help="Operation to execute.",
    )
    parser.add_argument(
        "path",
        nargs="?",
        type=Path,
        default=None,
        help="Message file (.eml) for the identify command.",
    )
    parser.add_argument(
        "--config-id",
        dest="config_id",
        default=None,
        help="Configuration to sync or test; sync defaults to all active ones.",
    )
    parser.add_argument("--email", default=None, help="Mailbox address (add-config).")
    parser.add_argument(
        "--user-id", dest="user_id", default=None, help="Owning user (add-config)."
    )
    parser.add_argument(
        "--app-password",
        dest="app_password",
        default=None,
        help="App password for the mailbox (add-config).",
    )
    parser.add_argument(
        "--archive",
        action="store_true",
        help="Move imported messages to the archive folder (add-config).",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command
    if command == "info":
        print("trade-inbox is ready. Add a mailbox configuration to get started.")
        print(f"Default IMAP host: {settings.imap.host}")
        print(f"Database path: {settings.storage.db_path}")
        return 0
    if command == "identify":
        return _run_identify(args.path)

    with SqliteSyncRepository(settings.storage) as repository:
        manager = build_sync_manager(settings, repository)
        if command == "sync":
            return _run_sync(manager, repository, args.config_id)
        if command == "test-config":
            return _run_test_config(manager, repository, args.config_id)
        if command == "stats":
            stats = manager.get_stats()
            print(f"Configurations: {stats.total_configurations}")
            print(f"Synced in the last window: {stats.recent_syncs}")
            print(f"Messages synced: {stats.total_messages_synced}")
            print(f"In error: {stats.configurations_with_errors}")
            return 0
        if command == "add-config":
            return _run_add_config(args, settings, repository)
    return 2


def build_sync_manager(
    settings: AppSettings, repository: SqliteSyncRepository
) -> MailboxSyncManager:
    """Wire a sync manager to SQLite storage and IMAP mailboxes."""
    return MailboxSyncManager(
        repository,
        lambda configuration: ImapClient(configuration, settings.imap),
        pacer=IntervalPacer(settings.sync.inter_configuration_delay_seconds),
        recent_sync_window=timedelta(minutes=settings.sync.recent_sync_window_minutes),
    )


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    return execute(args, settings)


def _run_sync(
    manager: MailboxSyncManager,
    repository: SqliteSyncRepository,
    config_id: str | None,
) -> int:
    """Run a synchronization pass and report the outcome."""
    if config_id is not None:
        configuration = repository.get_configuration(config_id)
        if configuration is None:
            print(f"Unknown configuration: {config_id}")
            return 1
        result = manager.sync_one(configuration)
        if result.success:
            print(f"{result.email_address}: synced {result.synced} message(s)")
            return 0
        print(f"{result.email_address}: sync failed: {result.error}")
        return 1

    summary = manager.sync_all()
    print(
        f"Synced {summary.total_synced} message(s) across "
        f"{summary.configurations_synced}/{summary.configurations_total} "
        f"configuration(s) in {summary.duration.total_seconds():.1f}s"
    )
    if summary.configurations_skipped:
        print(f"Skipped {summary.configurations_skipped} configuration(s) in flight")
    for error in summary.errors:
        print(f"  error: {error}")
    return 1 if summary.errors else 0


def _run_test_config(
    manager: MailboxSyncManager,
    repository: SqliteSyncRepository,
    config_id: str | None,
) -> int:
    if config_id is None:
        print("test-config requires --config-id")
        return 2
    configuration = repository.get_configuration(config_id)
    if configuration is None:
        print(f"Unknown configuration: {config_id}")
        return 1
    if manager.test_configuration(configuration):
        print(f"{configuration.email_address}: connection OK")
        return 0
    print(f"{configuration.email_address}: connection failed")
    return 1


def _run_add_config(
    args: argparse.Namespace,
    settings: AppSettings,
    repository: SqliteSyncRepository,
) -> int:
    if not args.email:
        print("add-config requires --email")
        return 2
    configuration = MailboxConfiguration(
        id=args.config_id or str(uuid.uuid4()),
        user_id=args.user_id or args.email,
        email_address=args.email,
        imap_host=settings.imap.host,
        imap_port=settings.imap.port,
        use_ssl=settings.imap.use_ssl,
        mailbox=settings.imap.mailbox,
        app_password=args.app_password,
        max_messages_per_sync=settings.sync.max_messages_per_sync,
        archive_after_import=args.archive,
        archive_folder=settings.sync.archive_folder,
    )
    repository.save_configuration(configuration)
    print(f"Added configuration {configuration.id} for {configuration.email_address}")
    return 0


def _run_identify(path: Path | None) -> int:
    if path is None:
        print("identify requires a message file path")
        return 2
    try:
        payload = path.read_bytes()
    except OSError as exc:
        print(f"Cannot read {path}: {exc}")
        return 1

    message = EmailParser().parse(0, payload)
    identification = identify(
        message.subject,
        message.sender,
        message.html_body,
        message.text_body,
        message.raw_headers,
    )
    report = validate(identification)
    print(f"Message-ID: {identification.message_id or '-'}")
    print(f"Content hash: {identification.content_hash}")
    print(f"Transaction hash: {identification.transaction_hash or '-'}")
    print(f"Order IDs: {', '.join(sorted(identification.order_ids)) or '-'}")
    confirmations = ", ".join(sorted(identification.confirmation_numbers))
    print(f"Confirmation numbers: {confirmations or '-'}")
    profile = detection_profile(identification)
    print(
        f"Identification confidence: {profile.identification_confidence:.2f} "
        f"(duplicate risk: {profile.duplicate_risk})"
    )
    print(f"Valid: {'yes' if report.is_valid else 'no'}")
    for error in report.errors:
        print(f"  error: {error}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    return 0 if report.is_valid else 1


if __name__ == "__main__":
    raise SystemExit(main())
