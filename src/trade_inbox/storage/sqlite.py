"""SQLite-backed repository for mailbox configurations and imported messages."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.interfaces import StorageUnavailableError, SyncRepository
from ..core.models import (
    SYNC_STATUSES,
    InsertReport,
    MailboxConfiguration,
    MessageRow,
    SyncStatus,
)

LOGGER = logging.getLogger(__name__)

_CONFIGURATION_COLUMNS = (
    "id",
    "user_id",
    "email_address",
    "imap_host",
    "imap_port",
    "use_ssl",
    "mailbox",
    "app_password",
    "is_active",
    "last_processed_uid",
    "max_messages_per_sync",
    "archive_after_import",
    "archive_folder",
    "sync_status",
    "last_error",
    "last_sync_at",
    "messages_synced",
    "sync_interval_minutes",
)


class SqliteSyncRepository(SyncRepository):
    """Persist configurations and messages using SQLite."""

    def __init__(
        self,
        settings: StorageSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Open the database and apply the bundled schema."""
        self._settings = settings
        self._clock = clock
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteSyncRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Configurations ----------------------------------------------------------
    def test_connection(self) -> bool:
        """Return ``True`` when the database answers a trivial query."""
        try:
            self._connection.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            LOGGER.error("SQLite connection test failed: %s", exc)
            return False
        return True

    def list_active_configurations(self) -> list[MailboxConfiguration]:
        """Return active configurations, oldest first."""
        cur = self._connection.execute(
            f"""
            SELECT {", ".join(_CONFIGURATION_COLUMNS)}
            FROM mailbox_configurations
            WHERE is_active = 1
            ORDER BY created_at, rowid
            """
        )
        return [_row_to_configuration(row) for row in cur.fetchall()]

    def get_configuration(self, configuration_id: str) -> MailboxConfiguration | None:
        """Return the configuration with ``configuration_id``, if stored."""
        cur = self._connection.execute(
            f"""
            SELECT {", ".join(_CONFIGURATION_COLUMNS)}
            FROM mailbox_configurations
            WHERE id = ?
            """,
            (configuration_id,),
        )
        row = cur.fetchone()
        return _row_to_configuration(row) if row is not None else None

    def save_configuration(self, configuration: MailboxConfiguration) -> None:
        """Insert or update ``configuration``."""
        if configuration.sync_status not in SYNC_STATUSES:
            raise ValueError(f"Unknown sync status: {configuration.sync_status}")
        LOGGER.debug("Saving configuration %s", configuration.id)
        placeholders = ", ".join("?" for _ in _CONFIGURATION_COLUMNS)
        updates = ", ".join(
            f"{column}=excluded.{column}" for column in _CONFIGURATION_COLUMNS[1:]
        )
        with self._connection:
            self._connection.execute(
                f"""
                INSERT INTO mailbox_configurations ({", ".join(_CONFIGURATION_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET {updates}, updated_at=CURRENT_TIMESTAMP
                """,
                (
                    configuration.id,
                    configuration.user_id,
                    configuration.email_address,
                    configuration.imap_host,
                    configuration.imap_port,
                    int(configuration.use_ssl),
                    configuration.mailbox,
                    configuration.app_password,
                    int(configuration.is_active),
                    configuration.last_processed_uid,
                    configuration.max_messages_per_sync,
                    int(configuration.archive_after_import),
                    configuration.archive_folder,
                    configuration.sync_status,
                    configuration.last_error,
                    serialize_datetime(configuration.last_sync_at),
                    configuration.messages_synced,
                    configuration.sync_interval_minutes,
                ),
            )

    def update_status(
        self, configuration_id: str, status: SyncStatus, error: str | None = None
    ) -> None:
        """Record the sync status; finished attempts also stamp ``last_sync_at``."""
        if status not in SYNC_STATUSES:
            raise ValueError(f"Unknown sync status: {status}")
        LOGGER.debug("Configuration %s status -> %s", configuration_id, status)
        with self._connection:
            if status in ("idle", "syncing"):
                self._connection.execute(
                    """
                    UPDATE mailbox_configurations
                    SET sync_status = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (status, configuration_id),
                )
            else:
                self._connection.execute(
                    """
                    UPDATE mailbox_configurations
                    SET sync_status = ?,
                        last_error = ?,
                        last_sync_at = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (
                        status,
                        error if status == "error" else None,
                        serialize_datetime(self._clock()),
                        configuration_id,
                    ),
                )

    def update_watermark(self, configuration_id: str, uid: int) -> None:
        """Advance the last processed UID; never moves it backwards."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE mailbox_configurations
                SET last_processed_uid = MAX(last_processed_uid, ?),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (uid, configuration_id),
            )

    def increment_synced_count(self, configuration_id: str, delta: int) -> None:
        """Add ``delta`` to the cumulative synced counter."""
        if delta < 0:
            raise ValueError("delta must not be negative")
        with self._connection:
            self._connection.execute(
                """
                UPDATE mailbox_configurations
                SET messages_synced = messages_synced + ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (delta, configuration_id),
            )

    # Messages ----------------------------------------------------------------
    def insert_messages(self, rows: Sequence[MessageRow]) -> InsertReport:
        """Insert rows not stored yet, de-duplicating by message ID and content hash."""
        inserted: list[str] = []
        if not rows:
            return InsertReport()
        try:
            with self._connection:
                for row in rows:
                    if self._is_known(row):
                        LOGGER.debug("Skipping duplicate message %s", row.message_id)
                        continue
                    cur = self._connection.execute(
                        """
                        INSERT OR IGNORE INTO inbox_messages (
                            user_id,
                            message_id,
                            uid,
                            subject,
                            from_email,
                            from_name,
                            to_email,
                            reply_to,
                            received_at,
                            text_content,
                            html_content,
                            content_hash,
                            transaction_hash,
                            order_ids,
                            email_size,
                            attachments
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            row.user_id,
                            row.message_id,
                            row.uid,
                            row.subject,
                            row.from_email,
                            row.from_name,
                            row.to_email,
                            row.reply_to,
                            serialize_datetime(row.received_at),
                            row.text_content,
                            row.html_content,
                            row.content_hash,
                            row.transaction_hash,
                            json.dumps(list(row.order_ids)),
                            row.email_size,
                            json.dumps(
                                [
                                    {
                                        "filename": item.filename,
                                        "content_type": item.content_type,
                                        "size": item.size,
                                    }
                                    for item in row.attachments
                                ]
                            ),
                        ),
                    )
                    if cur.rowcount == 1:
                        inserted.append(row.message_id)
        except sqlite3.Error as exc:
            LOGGER.error("Failed to insert %s message(s): %s", len(rows), exc)
            raise
        LOGGER.debug("Inserted %s of %s message(s)", len(inserted), len(rows))
        return InsertReport(message_ids=tuple(inserted))

    def exists_in_processed(self, message_id: str, user_id: str) -> bool:
        """Return ``True`` when the message was already moved to processed."""
        cur = self._connection.execute(
            "SELECT 1 FROM processed_messages WHERE user_id = ? AND message_id = ?",
            (user_id, message_id),
        )
        return cur.fetchone() is not None

    def mark_archived(
        self, message_ids: Sequence[str], user_id: str, folder: str
    ) -> int:
        """Flag messages as archived to ``folder``; returns rows updated."""
        if not message_ids:
            return 0
        placeholders = ", ".join("?" for _ in message_ids)
        archived_at = serialize_datetime(self._clock())
        updated = 0
        with self._connection:
            for table in ("inbox_messages", "processed_messages"):
                cur = self._connection.execute(
                    f"""
                    UPDATE {table}
                    SET archived_to_folder = ?, archived_at = ?
                    WHERE user_id = ? AND message_id IN ({placeholders})
                    """,
                    (folder, archived_at, user_id, *message_ids),
                )
                updated += cur.rowcount
        return updated

    def move_to_processed(
        self,
        message_ids: Sequence[str],
        user_id: str,
        result: str = "processed",
    ) -> int:
        """Move reviewed messages from the inbox table to the processed table."""
        if not message_ids:
            return 0
        placeholders = ", ".join("?" for _ in message_ids)
        with self._connection:
            self._connection.execute(
                f"""
                INSERT OR IGNORE INTO processed_messages (
                    user_id,
                    message_id,
                    uid,
                    subject,
                    from_email,
                    received_at,
                    content_hash,
                    transaction_hash,
                    order_ids,
                    processing_result,
                    archived_to_folder,
                    archived_at
                )
                SELECT
                    user_id,
                    message_id,
                    uid,
                    subject,
                    from_email,
                    received_at,
                    content_hash,
                    transaction_hash,
                    order_ids,
                    ?,
                    archived_to_folder,
                    archived_at
                FROM inbox_messages
                WHERE user_id = ? AND message_id IN ({placeholders})
                """,
                (result, user_id, *message_ids),
            )
            cur = self._connection.execute(
                f"""
                DELETE FROM inbox_messages
                WHERE user_id = ? AND message_id IN ({placeholders})
                """,
                (user_id, *message_ids),
            )
        LOGGER.debug("Moved %s message(s) to processed for %s", cur.rowcount, user_id)
        return cur.rowcount

    def count_messages(self, user_id: str | None = None) -> int:
        """Return the number of messages waiting in the inbox table."""
        if user_id is None:
            cur = self._connection.execute("SELECT COUNT(*) FROM inbox_messages")
        else:
            cur = self._connection.execute(
                "SELECT COUNT(*) FROM inbox_messages WHERE user_id = ?", (user_id,)
            )
        return int(cur.fetchone()[0])

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _is_known(self, row: MessageRow) -> bool:
        cur = self._connection.execute(
            """
            SELECT 1 FROM inbox_messages
            WHERE user_id = ? AND (message_id = ? OR content_hash = ?)
            UNION ALL
            SELECT 1 FROM processed_messages
            WHERE user_id = ? AND (message_id = ? OR content_hash = ?)
            LIMIT 1
            """,
            (
                row.user_id,
                row.message_id,
                row.content_hash,
                row.user_id,
                row.message_id,
                row.content_hash,
            ),
        )
        return cur.fetchone() is not None

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            try:
                with self._connection:
                    self._connection.executescript(script)
            except sqlite3.Error as exc:
                raise StorageUnavailableError(
                    f"Migration {migration.name} failed: {exc}"
                ) from exc


def _row_to_configuration(row: sqlite3.Row) -> MailboxConfiguration:
    return MailboxConfiguration(
        id=row["id"],
        user_id=row["user_id"],
        email_address=row["email_address"],
        imap_host=row["imap_host"],
        imap_port=row["imap_port"],
        use_ssl=bool(row["use_ssl"]),
        mailbox=row["mailbox"],
        app_password=row["app_password"],
        is_active=bool(row["is_active"]),
        last_processed_uid=row["last_processed_uid"],
        max_messages_per_sync=row["max_messages_per_sync"],
        archive_after_import=bool(row["archive_after_import"]),
        archive_folder=row["archive_folder"],
        sync_status=row["sync_status"],
        last_error=row["last_error"],
        last_sync_at=parse_datetime(row["last_sync_at"], assume_utc=True),
        messages_synced=row["messages_synced"],
        sync_interval_minutes=row["sync_interval_minutes"],
    )


__all__ = ["SqliteSyncRepository"]
