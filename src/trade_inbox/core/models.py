"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

SyncStatus = Literal["idle", "syncing", "success", "error"]

SYNC_STATUSES: tuple[SyncStatus, ...] = ("idle", "syncing", "success", "error")

DuplicateRisk = Literal["low", "medium", "high"]


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MailboxConfiguration:
    """A user's mailbox along with its sync watermark and status."""

    id: str
    user_id: str
    email_address: str
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    use_ssl: bool = True
    mailbox: str = "INBOX"
    app_password: str | None = None
    is_active: bool = True
    last_processed_uid: int = 0
    max_messages_per_sync: int = 50
    archive_after_import: bool = False
    archive_folder: str = "Processed"
    sync_status: SyncStatus = "idle"
    last_error: str | None = None
    last_sync_at: datetime | None = None
    messages_synced: int = 0
    sync_interval_minutes: int = 15


@dataclass(slots=True)
class AttachmentMeta:
    """Metadata describing an email attachment."""

    filename: str | None
    content_type: str | None
    size: int | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class RawMessage:
    """A message fetched from the mailbox for the duration of one sync pass."""

    uid: int
    message_id: str | None
    subject: str | None
    sender: str | None
    sender_name: str | None
    recipients: tuple[str, ...]
    reply_to: str | None
    received_at: datetime | None
    text_body: str | None
    html_body: str | None
    raw_headers: str
    size: int
    attachments: tuple[AttachmentMeta, ...] = ()


@dataclass(slots=True, frozen=True)
class TransactionFields:
    """Trade details recognised in a confirmation email."""

    symbol: str | None = None
    direction: str | None = None
    quantity: float | None = None
    price: float | None = None
    trade_date: str | None = None

    @property
    def is_recognized(self) -> bool:
        """A transaction needs a symbol plus a direction or quantity."""
        return self.symbol is not None and (
            self.direction is not None or self.quantity is not None
        )


@dataclass(slots=True, frozen=True)
class Identification:
    """Fingerprints derived from a single email."""

    content_hash: str
    transaction_hash: str | None
    order_ids: frozenset[str]
    message_id: str | None = None
    confirmation_numbers: frozenset[str] = frozenset()


@dataclass(slots=True, frozen=True)
class DetectionProfile:
    """How reliably an identification anchors duplicate detection."""

    identification_confidence: float
    duplicate_risk: DuplicateRisk


@dataclass(slots=True)
class ValidationReport:
    """Outcome of a completeness check; errors make it invalid."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class ComparisonResult:
    """Verdict of comparing two identifications."""

    is_duplicate: bool
    confidence: float
    matched_fields: tuple[str, ...]
    reasons: tuple[str, ...]


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MessageRow:
    """Storage representation of a fetched message."""

    user_id: str
    message_id: str
    uid: int
    subject: str | None
    from_email: str | None
    from_name: str | None
    to_email: str | None
    reply_to: str | None
    received_at: datetime | None
    text_content: str | None
    html_content: str | None
    content_hash: str
    transaction_hash: str | None
    order_ids: tuple[str, ...]
    email_size: int
    attachments: tuple[AttachmentMeta, ...] = ()


@dataclass(slots=True)
class InsertReport:
    """Rows actually written by a batch insert, after de-duplication."""

    message_ids: tuple[str, ...] = ()

    @property
    def inserted(self) -> int:
        return len(self.message_ids)


@dataclass(slots=True)
class SyncResult:
    """Outcome of syncing a single mailbox configuration."""

    configuration_id: str
    email_address: str
    success: bool
    synced: int = 0
    error: str | None = None
    skipped: bool = False


@dataclass(slots=True)
class SyncSummary:
    """Aggregate of every configuration attempted in one pass."""

    started_at: datetime
    finished_at: datetime | None = None
    total_synced: int = 0
    configurations_synced: int = 0
    configurations_total: int = 0
    configurations_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    results: list[SyncResult] = field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        if self.finished_at is None:
            return timedelta(0)
        return self.finished_at - self.started_at


@dataclass(slots=True, frozen=True)
class StatsSnapshot:
    """Read-only view of sync health across active configurations."""

    total_configurations: int
    active_configurations: int
    recent_syncs: int
    total_messages_synced: int
    configurations_with_errors: int


__all__ = [
    "AttachmentMeta",
    "ComparisonResult",
    "DetectionProfile",
    "DuplicateRisk",
    "Identification",
    "InsertReport",
    "MailboxConfiguration",
    "MessageRow",
    "RawMessage",
    "StatsSnapshot",
    "SYNC_STATUSES",
    "SyncResult",
    "SyncStatus",
    "SyncSummary",
    "TransactionFields",
    "ValidationReport",
]
