"""Tests for email fingerprinting and duplicate comparison."""

from __future__ import annotations

from pathlib import Path

from trade_inbox.core.models import Identification, TransactionFields
from trade_inbox.ingestion import EmailParser
from trade_inbox.ingestion.identification import (
    EMPTY_CONTENT_HASH,
    compare,
    content_hash,
    detection_profile,
    extract_confirmation_numbers,
    extract_order_ids,
    extract_transaction_fields,
    identify,
    normalize_text,
    transaction_hash,
    validate,
)

FIXTURE_PATH = Path(__file__).parent / "fixtures" / "trade_confirmation.eml"


def _fixture_identification() -> Identification:
    message = EmailParser().parse(uid=7, payload=FIXTURE_PATH.read_bytes())
    return identify(
        message.subject,
        message.sender,
        message.html_body,
        message.text_body,
        message.raw_headers,
    )


def test_identify_fixture_extracts_all_fingerprints() -> None:
    identification = _fixture_identification()

    assert len(identification.content_hash) == 16
    assert identification.order_ids == frozenset({"WS0012345678"})
    assert identification.message_id == "20250314.143205.7781@mail.broker.example"
    assert identification.transaction_hash == transaction_hash(
        TransactionFields(
            symbol="AAPL",
            direction="buy",
            quantity=25.0,
            price=189.25,
            trade_date="2025-03-14",
        )
    )


def test_identify_is_deterministic() -> None:
    first = identify("Bought AAPL", "a@b.c", "<p>hi</p>", "hi")
    second = identify("Bought AAPL", "a@b.c", "<p>hi</p>", "hi")
    assert first == second


def test_content_hash_ignores_case_whitespace_and_markup() -> None:
    plain = content_hash("Trade  Confirmation", "Desk@Broker.example", "", "Filled")
    noisy = content_hash(
        "trade confirmation!", "desk@broker.example ", "", "  FILLED\n"
    )
    assert plain == noisy
    assert normalize_text("<b>Hello,</b>   World") == "hello world"


def test_transaction_hash_differs_across_wordings_only_when_details_differ() -> None:
    first = identify(
        "Order filled",
        "one@broker.example",
        None,
        "You bought 10 shares of MSFT at $410.50 on 2025-04-02.",
    )
    second = identify(
        "Your purchase is complete",
        "two@broker.example",
        None,
        "Purchased 10 shares of MSFT. Price: 410.50 USD. Trade date 04/02/2025",
    )
    third = identify(
        "Order filled",
        "one@broker.example",
        None,
        "You sold 10 shares of MSFT at $410.50 on 2025-04-02.",
    )

    assert first.content_hash != second.content_hash
    assert first.transaction_hash is not None
    assert first.transaction_hash == second.transaction_hash
    assert first.transaction_hash != third.transaction_hash


def test_transaction_hash_absent_without_recognised_trade() -> None:
    identification = identify("Newsletter", "news@example.com", None, "Market recap")
    assert identification.transaction_hash is None
    assert transaction_hash(TransactionFields(direction="buy")) is None


def test_extract_transaction_fields_omits_what_is_missing() -> None:
    fields = extract_transaction_fields("Sold 3 shares of TSLA")
    assert fields.symbol == "TSLA"
    assert fields.direction == "sell"
    assert fields.quantity == 3.0
    assert fields.price is None
    assert fields.trade_date is None


def test_extract_transaction_fields_ignores_clock_times_as_prices() -> None:
    fields = extract_transaction_fields("Bought 5 shares of NVDA at 10:30 AM")
    assert fields.price is None


def test_extract_order_ids_handles_several_formats() -> None:
    content = (
        "Order #AB12345678 confirmed. Reference number: WS00998877. "
        "Confirmation 1234567890123."
    )
    assert extract_order_ids(content) == frozenset(
        {"AB12345678", "WS00998877", "1234567890123"}
    )
    assert extract_order_ids("Nothing to see here") == frozenset()


def test_validate_reports_warnings_without_failing() -> None:
    identification = identify("Hello", "friend@example.com", None, "Just saying hi")
    report = validate(identification)

    assert report.is_valid
    assert report.errors == []
    assert len(report.warnings) == 4
    assert "No confirmation numbers found" in report.warnings


def test_validate_flags_degenerate_content_hash() -> None:
    assert EMPTY_CONTENT_HASH == content_hash("", "", "", "")
    assert EMPTY_CONTENT_HASH == identify(None, None, None, None).content_hash

    report = validate(
        Identification(
            content_hash=EMPTY_CONTENT_HASH,
            transaction_hash=None,
            order_ids=frozenset(),
        )
    )
    assert not report.is_valid
    assert report.errors

    empty = validate(
        Identification(content_hash="", transaction_hash=None, order_ids=frozenset())
    )
    assert empty.errors == ["Content hash is required"]


def test_compare_is_reflexive() -> None:
    identification = _fixture_identification()
    result = compare(identification, identification)
    assert result.is_duplicate is True
    assert result.confidence == 1.0

    bare = Identification(content_hash="", transaction_hash=None, order_ids=frozenset())
    same = compare(bare, bare)
    assert same.is_duplicate is True
    assert same.confidence == 1.0


def test_compare_matches_transaction_hash_across_formats() -> None:
    first = Identification(
        content_hash="aaaa", transaction_hash="tx-1", order_ids=frozenset()
    )
    second = Identification(
        content_hash="bbbb", transaction_hash="tx-1", order_ids=frozenset()
    )
    result = compare(first, second)
    assert result.is_duplicate is True
    assert result.confidence == 0.7
    assert result.matched_fields == ("transactionHash",)


def test_compare_partial_order_overlap_below_threshold() -> None:
    first = Identification(
        content_hash="aaaa",
        transaction_hash=None,
        order_ids=frozenset({"WS00000001", "WS00000002"}),
    )
    second = Identification(
        content_hash="bbbb",
        transaction_hash=None,
        order_ids=frozenset({"WS00000001"}),
    )
    result = compare(first, second)
    assert result.is_duplicate is False
    assert result.confidence == 0.3
    assert result.matched_fields == ("orderIds",)


def test_compare_caps_confidence_at_one() -> None:
    first = Identification(
        content_hash="aaaa",
        transaction_hash="tx",
        order_ids=frozenset({"WS00000001"}),
        message_id="m@x",
    )
    second = Identification(
        content_hash="bbbb",
        transaction_hash="tx",
        order_ids=frozenset({"WS00000001"}),
        message_id="m@x",
    )
    result = compare(first, second)
    assert result.is_duplicate is True
    assert result.confidence == 1.0
    assert set(result.matched_fields) == {"messageId", "transactionHash", "orderIds"}


def test_extract_confirmation_numbers_requires_a_label() -> None:
    content = (
        "Confirmation number: C7X91Q2A. Ref #20250314AB. "
        "Trade confirmation: You bought 25 shares."
    )
    expected = frozenset({"C7X91Q2A", "20250314AB"})
    assert extract_confirmation_numbers(content) == expected
    assert extract_confirmation_numbers("Order 12345678 filled") == frozenset()

    identification = identify("Fill notice", "desk@broker.example", None, content)
    assert identification.confirmation_numbers == expected
    assert _fixture_identification().confirmation_numbers == frozenset()


def test_compare_weights_shared_confirmation_numbers() -> None:
    first = Identification(
        content_hash="aaaa",
        transaction_hash=None,
        order_ids=frozenset(),
        confirmation_numbers=frozenset({"C7X91Q2A", "C7X91Q2B"}),
    )
    second = Identification(
        content_hash="bbbb",
        transaction_hash=None,
        order_ids=frozenset(),
        confirmation_numbers=frozenset({"C7X91Q2A"}),
    )
    result = compare(first, second)
    assert result.is_duplicate is False
    assert result.confidence == 0.25
    assert result.matched_fields == ("confirmationNumbers",)

    shared = frozenset({"C7X91Q2A"})
    with_trade = compare(
        Identification("aaaa", "tx", frozenset(), confirmation_numbers=shared),
        Identification("bbbb", "tx", frozenset(), confirmation_numbers=shared),
    )
    assert with_trade.confidence == 1.0
    assert with_trade.matched_fields == ("transactionHash", "confirmationNumbers")


def test_detection_profile_rates_available_identifiers() -> None:
    full = detection_profile(_fixture_identification())
    assert full.identification_confidence == 0.9
    assert full.duplicate_risk == "low"

    no_orders = detection_profile(
        Identification("aaaa", None, frozenset(), message_id="m@x")
    )
    assert no_orders.identification_confidence == 0.6
    assert no_orders.duplicate_risk == "medium"

    bare = detection_profile(
        Identification(
            "aaaa", None, frozenset(), confirmation_numbers=frozenset({"C7X91Q2A"})
        )
    )
    assert bare.identification_confidence == 0.4
    assert bare.duplicate_risk == "high"
