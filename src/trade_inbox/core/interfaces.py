"""Protocol interfaces for the collaborators the sync manager depends on."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from .models import (
    InsertReport,
    MailboxConfiguration,
    MessageRow,
    RawMessage,
    SyncStatus,
)


class MailboxConnectionError(RuntimeError):
    """Raised when a mailbox cannot be reached, authenticated or queried."""


class StorageUnavailableError(RuntimeError):
    """Raised when the storage backend cannot be reached."""


class ArchiveError(RuntimeError):
    """Raised when moving or marking messages as archived fails."""


class MailboxClient(Protocol):
    """Abstraction over a mailbox protocol session such as IMAP."""

    def connect(self) -> None:
        """Open and authenticate the session."""
        raise NotImplementedError

    def disconnect(self) -> None:
        """Release network resources; safe to call when not connected."""
        raise NotImplementedError

    def test_connection(self) -> bool:
        """Connect and run a protocol level health check."""
        raise NotImplementedError

    def fetch_above_uid(self, uid: int, max_messages: int) -> list[RawMessage]:
        """Return up to ``max_messages`` messages with UID above ``uid``, ascending."""
        raise NotImplementedError

    def move_to_folder(self, uids: Sequence[int], folder: str) -> None:
        """Move the given messages to ``folder``."""
        raise NotImplementedError

    def to_storage_row(self, message: RawMessage, user_id: str) -> MessageRow:
        """Convert a fetched message into its storage representation."""
        raise NotImplementedError


class SyncRepository(Protocol):
    """Persistence for configurations and imported messages."""

    def test_connection(self) -> bool:
        """Return ``True`` when storage answers a trivial query."""
        raise NotImplementedError

    def list_active_configurations(self) -> list[MailboxConfiguration]:
        """Return active configurations, oldest first."""
        raise NotImplementedError

    def get_configuration(self, configuration_id: str) -> MailboxConfiguration | None:
        """Return the stored configuration with the given identifier."""
        raise NotImplementedError

    def save_configuration(self, configuration: MailboxConfiguration) -> None:
        """Insert or update a configuration."""
        raise NotImplementedError

    def update_status(
        self, configuration_id: str, status: SyncStatus, error: str | None = None
    ) -> None:
        """Record the sync status and, optionally, the last error."""
        raise NotImplementedError

    def update_watermark(self, configuration_id: str, uid: int) -> None:
        """Advance the last processed UID; never moves it backwards."""
        raise NotImplementedError

    def increment_synced_count(self, configuration_id: str, delta: int) -> None:
        """Add ``delta`` to the cumulative synced counter."""
        raise NotImplementedError

    def insert_messages(self, rows: Sequence[MessageRow]) -> InsertReport:
        """Insert rows that are not stored yet and report what was written."""
        raise NotImplementedError

    def exists_in_processed(self, message_id: str, user_id: str) -> bool:
        """Return ``True`` when the message was already moved to processed."""
        raise NotImplementedError

    def mark_archived(
        self, message_ids: Sequence[str], user_id: str, folder: str
    ) -> int:
        """Flag messages as archived to ``folder``; returns rows updated."""
        raise NotImplementedError

    def move_to_processed(
        self, message_ids: Sequence[str], user_id: str, result: str = "processed"
    ) -> int:
        """Move reviewed messages to the processed table; returns rows moved."""
        raise NotImplementedError

    def close(self) -> None:
        """Release the storage connection."""
        raise NotImplementedError


class Pacer(Protocol):
    """Spaces out consecutive operations."""

    def wait(self) -> None:
        """Block until the next operation may start."""
        raise NotImplementedError


__all__ = [
    "ArchiveError",
    "MailboxClient",
    "MailboxConnectionError",
    "Pacer",
    "StorageUnavailableError",
    "SyncRepository",
]
