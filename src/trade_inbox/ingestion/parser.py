"""Utilities for parsing raw RFC822 messages into ``RawMessage`` records."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parseaddr, parsedate_to_datetime

from ..core.models import AttachmentMeta, RawMessage


class EmailParser:
    """Convert raw email payloads into messages ready for identification."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self, uid: int, payload: bytes, internal_date: datetime | None = None
    ) -> RawMessage:
        """Parse raw RFC822 bytes into a :class:`RawMessage`."""
        message = self._parser.parsebytes(payload)
        sender_name, sender = _split_address(message.get("From"))
        _, reply_to = _split_address(message.get("Reply-To"))
        text_body, html_body = _extract_bodies(message)

        return RawMessage(
            uid=uid,
            message_id=_clean_message_id(message.get("Message-ID")),
            subject=_header_text(message.get("Subject")),
            sender=sender,
            sender_name=sender_name,
            recipients=tuple(_extract_addresses(message.get_all("To", []))),
            reply_to=reply_to,
            received_at=_try_parse_datetime(message.get("Date")) or internal_date,
            text_body=text_body,
            html_body=html_body,
            raw_headers=_raw_headers(payload),
            size=len(payload),
            attachments=tuple(_collect_attachments(message)),
        )


def _header_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_message_id(value: object) -> str | None:
    text = _header_text(value)
    if text is None:
        return None
    return text.strip("<>") or None


def _split_address(header_value: object) -> tuple[str | None, str | None]:
    if header_value is None:
        return None, None
    name, address = parseaddr(str(header_value))
    return (name or None), (address.lower() if address else None)


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address


def _raw_headers(payload: bytes) -> str:
    head, _, _ = payload.partition(b"\r\n\r\n")
    if head == payload:
        head, _, _ = payload.partition(b"\n\n")
    return head.decode("utf-8", errors="replace")


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _collect_attachments(message: EmailMessage) -> Iterable[AttachmentMeta]:
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        yield AttachmentMeta(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            size=len(payload) if payload else None,
        )


def _try_parse_datetime(header_value: object) -> datetime | None:
    if header_value is None:
        return None
    try:
        return parsedate_to_datetime(str(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser"]
