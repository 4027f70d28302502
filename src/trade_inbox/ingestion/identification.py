"""Fingerprinting of brokerage confirmation emails for duplicate detection.

Three independent signals are derived from an email:

* a *content hash* over the normalized subject, sender and bodies, which
  catches the exact same message fetched twice;
* a *transaction hash* over the trade details recognised in the text, which
  catches the same execution reported by differently worded emails;
* the sets of broker *order IDs* and *confirmation numbers* quoted in the
  message.

Everything here is pure and deterministic.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime

from ..core.models import (
    ComparisonResult,
    DetectionProfile,
    DuplicateRisk,
    Identification,
    TransactionFields,
    ValidationReport,
)

_CONTENT_HASH_LENGTH = 16
_TRANSACTION_HASH_LENGTH = 20

DUPLICATE_THRESHOLD = 0.7

_MESSAGE_ID_WEIGHT = 0.9
_TRANSACTION_HASH_WEIGHT = 0.7
_ORDER_ID_WEIGHT = 0.6
_CONFIRMATION_WEIGHT = 0.5

_ORDER_ID_PATTERNS = (
    re.compile(
        r"\b(?:order|id|confirmation|reference)(?:\s*(?:number|no\.?))?[:\s#]*"
        r"([A-Z]{2,3}\d{6,12})\b",
        re.IGNORECASE,
    ),
    re.compile(r"\bWS\d{6,12}\b", re.IGNORECASE),
    re.compile(r"\b[A-Z]{2}\d{8,10}\b"),
    re.compile(r"\b\d{10,15}\b"),
)
_VALID_ORDER_ID = re.compile(r"WS\d{6,12}|[A-Z]{2,3}\d{6,12}|\d{10,15}")
_CONFIRMATION_PATTERN = re.compile(
    r"\b(?i:confirmation|conf|ref)(?:\s*(?i:number|no\.?))?[:\s#]*"
    r"([A-Z0-9]{6,20})\b"
)

_MESSAGE_ID_PATTERN = re.compile(r"^message-id:\s*<([^>]+)>", re.IGNORECASE | re.MULTILINE)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s.@-]")

_NUMBER = r"(\d+(?:,\d{3})*(?:\.\d{1,8})?)"
_TICKER = r"([A-Z]{1,5}(?:\.[A-Z]{1,2})?)"
_PRICE = r"(\d+(?:,\d{3})*(?:\.\d{1,4})?)(?![\d:/-])"

_DIRECTION_PATTERN = re.compile(
    r"\b(bought|sold|buy|sell|purchased|purchase|sale)\b", re.IGNORECASE
)
_DIRECTIONS = {
    "bought": "buy",
    "buy": "buy",
    "purchased": "buy",
    "purchase": "buy",
    "sold": "sell",
    "sell": "sell",
    "sale": "sell",
}
_QUANTITY_PATTERNS = (
    re.compile(_NUMBER + r"\s*(?:shares?|units?|contracts?)\b", re.IGNORECASE),
    re.compile(r"\b(?:bought|sold|purchased)\s+" + _NUMBER + r"\b", re.IGNORECASE),
    re.compile(r"\bquantity[:\s]+" + _NUMBER, re.IGNORECASE),
)
_SYMBOL_PATTERNS = (
    re.compile(r"\b(?i:symbol|ticker)[:\s]+" + _TICKER + r"\b"),
    re.compile(r"\b(?i:shares?|units?|contracts?)\s+(?i:of\s+)" + _TICKER + r"\b"),
    re.compile(r"\(" + _TICKER + r"\)"),
    re.compile(
        r"\b(?i:bought|sold|buy|sell)\s+(?:[\d,.]+\s+)?(?i:shares?\s+)?" + _TICKER + r"\b"
    ),
)
_SYMBOL_STOPWORDS = frozenset(
    {"USD", "CAD", "EUR", "GBP", "ID", "AM", "PM", "EST", "EDT", "UTC", "I", "A"}
)
_PRICE_PATTERNS = (
    re.compile(r"\b(?:price|at)[:\s]+[$€£¥]?\s?" + _PRICE, re.IGNORECASE),
    re.compile(_PRICE + r"\s*(?:per\s+share|each)\b", re.IGNORECASE),
    re.compile(r"[$€£¥]\s?" + _PRICE),
    re.compile(r"\b" + _PRICE + r"\s*(?:USD|CAD|EUR)\b"),
)
_ISO_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_US_DATE = re.compile(r"\b(\d{1,2}/\d{1,2}/\d{4})\b")
_LONG_DATE = re.compile(
    r"\b((?:January|February|March|April|May|June|July|August|September|October"
    r"|November|December)\s+\d{1,2},?\s+\d{4})\b",
    re.IGNORECASE,
)


def identify(
    subject: str | None,
    sender: str | None,
    html_body: str | None,
    text_body: str | None,
    raw_headers: str | None = None,
) -> Identification:
    """Derive the fingerprints of an email."""
    subject = subject or ""
    sender = sender or ""
    html_body = html_body or ""
    text_body = text_body or ""

    readable = _collapse(f"{subject} {_strip_tags(html_body)} {text_body}")
    fields = extract_transaction_fields(readable)
    quoted = f"{subject} {html_body} {text_body}"

    return Identification(
        content_hash=content_hash(subject, sender, html_body, text_body),
        transaction_hash=transaction_hash(fields),
        order_ids=extract_order_ids(quoted),
        confirmation_numbers=extract_confirmation_numbers(quoted),
        message_id=_extract_message_id(raw_headers),
    )


def content_hash(subject: str, sender: str, html_body: str, text_body: str) -> str:
    """Return the fingerprint of the normalized message content."""
    payload = "|".join(
        (
            normalize_text(subject),
            sender.strip().lower(),
            normalize_text(html_body),
            normalize_text(text_body),
        )
    )
    return _digest(payload, _CONTENT_HASH_LENGTH)


def transaction_hash(fields: TransactionFields) -> str | None:
    """Return the fingerprint of recognised trade details, if any."""
    if not fields.is_recognized:
        return None
    parts = [f"symbol={fields.symbol}"]
    if fields.direction is not None:
        parts.append(f"direction={fields.direction}")
    if fields.quantity is not None:
        parts.append(f"quantity={_format_quantity(fields.quantity)}")
    if fields.price is not None:
        parts.append(f"price={fields.price:.2f}")
    if fields.trade_date is not None:
        parts.append(f"date={fields.trade_date}")
    return _digest("|".join(parts), _TRANSACTION_HASH_LENGTH)


def extract_order_ids(content: str) -> frozenset[str]:
    """Return broker order identifiers quoted in ``content``."""
    found: set[str] = set()
    for pattern in _ORDER_ID_PATTERNS:
        for match in pattern.finditer(content):
            candidate = (match.group(1) if match.groups() else match.group(0)).strip()
            candidate = candidate.upper()
            if 6 <= len(candidate) <= 20 and _VALID_ORDER_ID.fullmatch(candidate):
                found.add(candidate)
    return frozenset(found)


def extract_confirmation_numbers(content: str) -> frozenset[str]:
    """Return confirmation or reference numbers quoted after their label."""
    return frozenset(
        match.group(1) for match in _CONFIRMATION_PATTERN.finditer(content)
    )


def extract_transaction_fields(content: str) -> TransactionFields:
    """Recognise symbol, direction, quantity, price and trade date in ``content``."""
    direction = None
    direction_match = _DIRECTION_PATTERN.search(content)
    if direction_match:
        direction = _DIRECTIONS[direction_match.group(1).lower()]

    return TransactionFields(
        symbol=_first_symbol(content),
        direction=direction,
        quantity=_first_number(_QUANTITY_PATTERNS, content, upper=None),
        price=_first_number(_PRICE_PATTERNS, content, upper=1_000_000),
        trade_date=_first_date(content),
    )


def validate(identification: Identification) -> ValidationReport:
    """Check an identification for completeness without raising."""
    report = ValidationReport()
    if not identification.content_hash:
        report.errors.append("Content hash is required")
    elif identification.content_hash == EMPTY_CONTENT_HASH:
        report.errors.append("Content hash was computed from empty content")

    if not identification.transaction_hash:
        report.warnings.append(
            "No transaction details recognised - cross-format duplicate detection unavailable"
        )
    if not identification.order_ids:
        report.warnings.append(
            "No order IDs found - duplicate detection may be less reliable"
        )
    if not identification.message_id:
        report.warnings.append("Message-ID not found")
    if not identification.confirmation_numbers:
        report.warnings.append("No confirmation numbers found")
    return report


def compare(first: Identification, second: Identification) -> ComparisonResult:
    """Decide whether two identifications describe the same email or trade."""
    if first.content_hash and first.content_hash == second.content_hash:
        return ComparisonResult(
            is_duplicate=True,
            confidence=1.0,
            matched_fields=("contentHash",),
            reasons=("Identical content hash",),
        )
    if first == second:
        return ComparisonResult(
            is_duplicate=True,
            confidence=1.0,
            matched_fields=(),
            reasons=("Identical identification",),
        )

    matched: list[str] = []
    reasons: list[str] = []
    confidence = 0.0

    if first.message_id and first.message_id == second.message_id:
        matched.append("messageId")
        reasons.append("Identical Message-ID")
        confidence += _MESSAGE_ID_WEIGHT

    if first.transaction_hash and first.transaction_hash == second.transaction_hash:
        matched.append("transactionHash")
        reasons.append("Identical transaction hash")
        confidence += _TRANSACTION_HASH_WEIGHT

    shared = first.order_ids & second.order_ids
    if shared:
        matched.append("orderIds")
        reasons.append(f"Shared order IDs: {', '.join(sorted(shared))}")
        confidence += _ORDER_ID_WEIGHT * _overlap(
            shared, first.order_ids, second.order_ids
        )

    shared = first.confirmation_numbers & second.confirmation_numbers
    if shared:
        matched.append("confirmationNumbers")
        reasons.append(f"Shared confirmation numbers: {', '.join(sorted(shared))}")
        confidence += _CONFIRMATION_WEIGHT * _overlap(
            shared, first.confirmation_numbers, second.confirmation_numbers
        )

    confidence = round(min(confidence, 1.0), 4)
    return ComparisonResult(
        is_duplicate=confidence >= DUPLICATE_THRESHOLD,
        confidence=confidence,
        matched_fields=tuple(matched),
        reasons=tuple(reasons),
    )


def detection_profile(identification: Identification) -> DetectionProfile:
    """Rate how well an identification can anchor duplicate detection.

    Confidence starts at 0.3 and grows with each identifier present. Risk is
    ``high`` with neither a Message-ID nor order IDs, ``medium`` with only one
    of them and ``low`` otherwise.
    """
    confidence = 0.3
    if identification.message_id:
        confidence += 0.3
    if identification.order_ids:
        confidence += 0.3
    if identification.confirmation_numbers:
        confidence += 0.1

    risk: DuplicateRisk = "low"
    if not identification.message_id and not identification.order_ids:
        risk = "high"
    elif not identification.message_id or not identification.order_ids:
        risk = "medium"
    return DetectionProfile(
        identification_confidence=round(min(confidence, 1.0), 4),
        duplicate_risk=risk,
    )


def normalize_text(text: str) -> str:
    """Strip markup and punctuation, collapse whitespace and case-fold."""
    stripped = _PUNCTUATION_PATTERN.sub("", _strip_tags(text))
    return _collapse(stripped).lower()


def _strip_tags(text: str) -> str:
    return _TAG_PATTERN.sub(" ", text)


def _collapse(text: str) -> str:
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def _digest(payload: str, length: int) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:length]


def _overlap(
    shared: frozenset[str], first: frozenset[str], second: frozenset[str]
) -> float:
    return len(shared) / max(len(first), len(second))


def _format_quantity(quantity: float) -> str:
    return f"{quantity:.8f}".rstrip("0").rstrip(".")


def _extract_message_id(raw_headers: str | None) -> str | None:
    if not raw_headers:
        return None
    match = _MESSAGE_ID_PATTERN.search(raw_headers)
    return match.group(1).strip() if match else None


def _first_symbol(content: str) -> str | None:
    for pattern in _SYMBOL_PATTERNS:
        for match in pattern.finditer(content):
            symbol = match.group(1)
            if symbol not in _SYMBOL_STOPWORDS:
                return symbol
    return None


def _first_number(
    patterns: tuple[re.Pattern[str], ...], content: str, *, upper: float | None
) -> float | None:
    for pattern in patterns:
        for match in pattern.finditer(content):
            try:
                value = float(match.group(1).replace(",", ""))
            except ValueError:
                continue
            if value <= 0 or (upper is not None and value >= upper):
                continue
            return value
    return None


def _first_date(content: str) -> str | None:
    for pattern, formats in (
        (_ISO_DATE, ("%Y-%m-%d",)),
        (_US_DATE, ("%m/%d/%Y",)),
        (_LONG_DATE, ("%B %d %Y",)),
    ):
        for match in pattern.finditer(content):
            raw = match.group(1).replace(",", "")
            raw = _collapse(raw)
            for fmt in formats:
                try:
                    return datetime.strptime(raw, fmt).date().isoformat()
                except ValueError:
                    continue
    return None


EMPTY_CONTENT_HASH = content_hash("", "", "", "")


__all__ = [
    "DUPLICATE_THRESHOLD",
    "EMPTY_CONTENT_HASH",
    "compare",
    "content_hash",
    "detection_profile",
    "extract_confirmation_numbers",
    "extract_order_ids",
    "extract_transaction_fields",
    "identify",
    "normalize_text",
    "transaction_hash",
    "validate",
]
