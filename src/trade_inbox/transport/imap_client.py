"""IMAP transport adapter providing mailbox access for one configuration."""

from __future__ import annotations

import imaplib
import logging
from collections.abc import Sequence
from types import TracebackType

from ..core.config import ImapSettings
from ..core.interfaces import ArchiveError, MailboxClient, MailboxConnectionError
from ..core.models import MailboxConfiguration, MessageRow, RawMessage
from ..ingestion.identification import identify
from ..ingestion.parser import EmailParser

LOGGER = logging.getLogger(__name__)


class ImapError(MailboxConnectionError):
    """Wrap low level IMAP errors with additional context."""


class ImapClient(MailboxClient):
    """Thin wrapper around ``imaplib`` bound to a mailbox configuration."""

    def __init__(
        self,
        configuration: MailboxConfiguration,
        settings: ImapSettings,
        parser: EmailParser | None = None,
    ) -> None:
        """Initialise the client with the configuration and connection defaults."""
        self._configuration = configuration
        self._settings = settings
        self._parser = parser or EmailParser()
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.disconnect()

    # Public API ---------------------------------------------------------------
    def connect(self) -> None:
        """Establish the IMAP session and select the configured mailbox."""
        if self._connection is not None:
            return

        config = self._configuration
        username = config.email_address or self._settings.username
        password = config.app_password or self._settings.app_password
        if not username or not password:
            raise ImapError(f"IMAP credentials are not configured for {username}")

        try:
            LOGGER.debug(
                "Connecting to IMAP host %s:%s (ssl=%s)",
                config.imap_host,
                config.imap_port,
                config.use_ssl,
            )
            connection: imaplib.IMAP4 | imaplib.IMAP4_SSL
            if config.use_ssl:
                connection = imaplib.IMAP4_SSL(
                    config.imap_host,
                    config.imap_port,
                    timeout=self._settings.timeout_seconds,
                )
            else:
                connection = imaplib.IMAP4(
                    config.imap_host,
                    config.imap_port,
                    timeout=self._settings.timeout_seconds,
                )

            LOGGER.debug("Authenticating as %s", username)
            connection.login(username, password)
            status, _ = connection.select(config.mailbox)
            if status != "OK":
                raise ImapError(f"Unable to select mailbox '{config.mailbox}'")
            self._connection = connection
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(
                f"Failed to connect to {config.imap_host}:{config.imap_port}: {exc}"
            ) from exc

    def disconnect(self) -> None:
        """Terminate the IMAP session; safe to call when not connected."""
        if self._connection is None:
            return
        try:
            LOGGER.debug("Closing IMAP connection")
            self._connection.close()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover - server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                self._connection.logout()
            except (imaplib.IMAP4.error, OSError):  # pragma: no cover
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")
            self._connection = None

    def test_connection(self) -> bool:
        """Connect if needed and issue ``NOOP`` as a health check."""
        self.connect()
        connection = self._require_connection()
        try:
            status, _ = connection.noop()
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"NOOP failed: {exc}") from exc
        return status == "OK"

    def fetch_above_uid(self, uid: int, max_messages: int) -> list[RawMessage]:
        """Return up to ``max_messages`` messages with UID above ``uid``, ascending."""
        connection = self._require_connection()
        start_uid = max(uid, 0) + 1
        LOGGER.debug("Searching for messages from UID %s", start_uid)
        try:
            status, data = connection.uid("SEARCH", None, f"UID {start_uid}:*")  # type: ignore[arg-type]
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP error while searching from UID {start_uid}") from exc
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")

        raw_ids = data[0].split() if data and data[0] else []
        # "n:*" always matches the newest message, even when its UID is below n.
        uids = sorted(value for value in (int(raw) for raw in raw_ids) if value > uid)
        if not uids:
            LOGGER.debug("No new messages found above UID %s", uid)
            return []
        if len(uids) > max_messages:
            LOGGER.debug(
                "Capping fetch at %s of %s new message(s)", max_messages, len(uids)
            )
            uids = uids[:max_messages]

        messages: list[RawMessage] = []
        for message_uid in uids:
            payload = self._fetch_payload(connection, message_uid)
            if payload is None:
                # Stop so the watermark never passes a UID left unread.
                LOGGER.warning(
                    "No RFC822 payload for UID %s; stopping batch after %s message(s)",
                    message_uid,
                    len(messages),
                )
                break
            messages.append(self._parser.parse(message_uid, payload))
        return messages

    def move_to_folder(self, uids: Sequence[int], folder: str) -> None:
        """Move messages to ``folder``, creating it when missing."""
        if not uids:
            return
        connection = self._require_connection()
        uid_set = ",".join(str(uid) for uid in uids)
        quoted = f'"{folder}"'
        try:
            status, _ = connection.create(quoted)
            if status != "OK":
                LOGGER.debug("Folder %s not created; assuming it exists", folder)

            LOGGER.debug("Moving UIDs %s to '%s'", uid_set, folder)
            try:
                status, _ = connection.uid("MOVE", uid_set, quoted)
            except imaplib.IMAP4.error as exc:
                LOGGER.debug("MOVE rejected by server: %s", exc)
                status = "NO"
            if status == "OK":
                return

            LOGGER.debug("MOVE unavailable; falling back to COPY and EXPUNGE")
            status, _ = connection.uid("COPY", uid_set, quoted)
            if status != "OK":
                raise ArchiveError(f"Failed to copy UIDs {uid_set} to {folder}")
            status, _ = connection.uid(
                "STORE", uid_set, "+FLAGS.SILENT", r"(\Deleted)"
            )
            if status != "OK":
                raise ArchiveError(f"Failed to flag UIDs {uid_set} for deletion")
            status, _ = connection.expunge()
            if status != "OK":
                raise ArchiveError("Failed to expunge moved messages")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ArchiveError(f"IMAP error while moving UIDs {uid_set}") from exc

    def to_storage_row(self, message: RawMessage, user_id: str) -> MessageRow:
        """Fingerprint ``message`` and convert it to its storage row."""
        identification = identify(
            message.subject,
            message.sender,
            message.html_body,
            message.text_body,
            message.raw_headers,
        )
        message_id = (
            message.message_id
            or identification.message_id
            or f"imap-{self._configuration.email_address}-{message.uid}"
        )
        return MessageRow(
            user_id=user_id,
            message_id=message_id,
            uid=message.uid,
            subject=message.subject,
            from_email=message.sender,
            from_name=message.sender_name,
            to_email=message.recipients[0] if message.recipients else None,
            reply_to=message.reply_to,
            received_at=message.received_at,
            text_content=message.text_body,
            html_content=message.html_body,
            content_hash=identification.content_hash,
            transaction_hash=identification.transaction_hash,
            order_ids=tuple(sorted(identification.order_ids)),
            email_size=message.size,
            attachments=message.attachments,
        )

    # Internal helpers ---------------------------------------------------------
    def _fetch_payload(
        self, connection: imaplib.IMAP4 | imaplib.IMAP4_SSL, uid: int
    ) -> bytes | None:
        LOGGER.debug("Fetching RFC822 payload for UID %s", uid)
        try:
            status, data = connection.uid("FETCH", str(uid), "(RFC822)")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP error while fetching UID {uid}") from exc
        if status != "OK":
            raise ImapError(f"Failed to fetch message UID {uid}")
        return _extract_rfc822(data)

    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract RFC822 payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = [
    "ImapClient",
    "ImapError",
]
