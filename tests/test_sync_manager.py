"""Tests for the mailbox sync orchestration logic."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Sequence

import pytest

from trade_inbox.core.interfaces import MailboxConnectionError
from trade_inbox.core.models import (
    InsertReport,
    MailboxConfiguration,
    MessageRow,
    RawMessage,
    SyncStatus,
)
from trade_inbox.ingestion import ConfigurationLocks, IntervalPacer, MailboxSyncManager
from trade_inbox.ingestion.sync_manager import SYNC_IN_PROGRESS

NOW = datetime(2025, 3, 14, 18, 0, tzinfo=UTC)


def _message(uid: int) -> RawMessage:
    return RawMessage(
        uid=uid,
        message_id=f"{uid}@broker.example",
        subject=f"Trade confirmation {uid}",
        sender="notifications@broker.example",
        sender_name=None,
        recipients=("jane@example.com",),
        reply_to=None,
        received_at=None,
        text_body=f"You bought {uid} shares of AAPL",
        html_body=None,
        raw_headers="",
        size=64,
    )


def _configuration(config_id: str, email: str, **overrides) -> MailboxConfiguration:
    return MailboxConfiguration(
        id=config_id, user_id="user-1", email_address=email, **overrides
    )


class FakeMailboxClient:
    """Mailbox returning predetermined messages and recording calls."""

    def __init__(
        self,
        messages: Sequence[RawMessage] = (),
        *,
        connect_error: Exception | None = None,
        fetch_error: Exception | None = None,
        move_error: Exception | None = None,
        healthy: bool = True,
    ) -> None:
        self.messages = list(messages)
        self.connect_error = connect_error
        self.fetch_error = fetch_error
        self.move_error = move_error
        self.healthy = healthy
        self.fetch_calls: list[tuple[int, int]] = []
        self.moved: list[tuple[list[int], str]] = []
        self.disconnects = 0

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    def disconnect(self) -> None:
        self.disconnects += 1

    def test_connection(self) -> bool:
        self.connect()
        return self.healthy

    def fetch_above_uid(self, uid: int, max_messages: int) -> list[RawMessage]:
        self.fetch_calls.append((uid, max_messages))
        if self.fetch_error is not None:
            raise self.fetch_error
        newer = sorted(
            (message for message in self.messages if message.uid > uid),
            key=lambda message: message.uid,
        )
        return newer[:max_messages]

    def move_to_folder(self, uids: Sequence[int], folder: str) -> None:
        if self.move_error is not None:
            raise self.move_error
        self.moved.append((list(uids), folder))

    def to_storage_row(self, message: RawMessage, user_id: str) -> MessageRow:
        return MessageRow(
            user_id=user_id,
            message_id=message.message_id or f"uid-{message.uid}",
            uid=message.uid,
            subject=message.subject,
            from_email=message.sender,
            from_name=message.sender_name,
            to_email=None,
            reply_to=None,
            received_at=None,
            text_content=message.text_body,
            html_content=None,
            content_hash=f"hash-{message.uid}",
            transaction_hash=None,
            order_ids=(),
            email_size=message.size,
        )


class FakeRepository:
    """In-memory repository mirroring the SQLite semantics."""

    def __init__(self, *configurations: MailboxConfiguration) -> None:
        self.configurations = {item.id: item for item in configurations}
        self.healthy = True
        self.inbox: dict[tuple[str, str], MessageRow] = {}
        self.processed: set[tuple[str, str]] = set()
        self.archived: list[tuple[list[str], str, str]] = []
        self.statuses: list[tuple[str, SyncStatus]] = []
        self.clock = lambda: NOW

    def test_connection(self) -> bool:
        return self.healthy

    def list_active_configurations(self) -> list[MailboxConfiguration]:
        return [item for item in self.configurations.values() if item.is_active]

    def get_configuration(self, configuration_id: str) -> MailboxConfiguration | None:
        return self.configurations.get(configuration_id)

    def save_configuration(self, configuration: MailboxConfiguration) -> None:
        self.configurations[configuration.id] = configuration

    def update_status(
        self, configuration_id: str, status: SyncStatus, error: str | None = None
    ) -> None:
        self.statuses.append((configuration_id, status))
        configuration = self.configurations[configuration_id]
        configuration.sync_status = status
        configuration.last_error = error
        if status in ("success", "error"):
            configuration.last_sync_at = self.clock()

    def update_watermark(self, configuration_id: str, uid: int) -> None:
        configuration = self.configurations[configuration_id]
        configuration.last_processed_uid = max(configuration.last_processed_uid, uid)

    def increment_synced_count(self, configuration_id: str, delta: int) -> None:
        self.configurations[configuration_id].messages_synced += delta

    def insert_messages(self, rows: Sequence[MessageRow]) -> InsertReport:
        written: list[str] = []
        for row in rows:
            key = (row.user_id, row.message_id)
            if key in self.inbox or key in self.processed:
                continue
            self.inbox[key] = row
            written.append(row.message_id)
        return InsertReport(tuple(written))

    def exists_in_processed(self, message_id: str, user_id: str) -> bool:
        return (user_id, message_id) in self.processed

    def mark_archived(
        self, message_ids: Sequence[str], user_id: str, folder: str
    ) -> int:
        self.archived.append((list(message_ids), user_id, folder))
        return len(message_ids)

    def move_to_processed(
        self, message_ids: Sequence[str], user_id: str, result: str = "processed"
    ) -> int:
        del result
        moved = 0
        for message_id in message_ids:
            if self.inbox.pop((user_id, message_id), None) is not None:
                self.processed.add((user_id, message_id))
                moved += 1
        return moved

    def close(self) -> None:
        return None


class RecordingPacer:
    """Pacer that counts waits instead of sleeping."""

    def __init__(self) -> None:
        self.waits = 0

    def wait(self) -> None:
        self.waits += 1


def _manager(
    repository: FakeRepository,
    clients: dict[str, FakeMailboxClient],
    **kwargs,
) -> MailboxSyncManager:
    kwargs.setdefault("pacer", RecordingPacer())
    kwargs.setdefault("clock", lambda: NOW)
    return MailboxSyncManager(
        repository,
        lambda configuration: clients[configuration.email_address],
        **kwargs,
    )


def test_sync_all_isolates_failing_configuration() -> None:
    repository = FakeRepository(
        _configuration("c1", "one@example.com"),
        _configuration("c2", "bad@example.com"),
        _configuration("c3", "three@example.com"),
    )
    clients = {
        "one@example.com": FakeMailboxClient([_message(1), _message(2)]),
        "bad@example.com": FakeMailboxClient(
            connect_error=MailboxConnectionError("IMAP login failed")
        ),
        "three@example.com": FakeMailboxClient([_message(10)]),
    }
    pacer = RecordingPacer()

    summary = _manager(repository, clients, pacer=pacer).sync_all()

    assert summary.configurations_total == 3
    assert summary.configurations_synced == 2
    assert summary.total_synced == 3
    assert len(summary.results) == 3
    assert summary.errors == ["bad@example.com: IMAP login failed"]
    assert summary.finished_at == NOW
    assert pacer.waits == 3

    failed = repository.configurations["c2"]
    assert failed.sync_status == "error"
    assert failed.last_error == "IMAP login failed"
    assert repository.configurations["c1"].sync_status == "success"
    assert all(client.disconnects == 1 for client in clients.values())


def test_sync_all_reports_unavailable_storage_once() -> None:
    repository = FakeRepository(_configuration("c1", "one@example.com"))
    repository.healthy = False
    client = FakeMailboxClient([_message(1)])

    summary = _manager(repository, {"one@example.com": client}).sync_all()

    assert summary.errors == ["Global sync error: Database connection failed"]
    assert summary.results == []
    assert summary.total_synced == 0
    assert summary.finished_at is not None
    assert client.fetch_calls == []


def test_sync_all_without_configurations_is_empty_success() -> None:
    summary = _manager(FakeRepository(), {}).sync_all()

    assert summary.configurations_total == 0
    assert summary.errors == []
    assert summary.duration == timedelta(0)


def test_sync_one_advances_watermark_to_highest_uid() -> None:
    configuration = _configuration("c1", "one@example.com", max_messages_per_sync=2)
    repository = FakeRepository(configuration)
    client = FakeMailboxClient([_message(7), _message(3), _message(5)])

    result = _manager(repository, {"one@example.com": client}).sync_one(configuration)

    assert result.success
    assert result.synced == 2
    assert client.fetch_calls == [(0, 2)]
    stored = repository.configurations["c1"]
    assert stored.last_processed_uid == 5
    assert stored.messages_synced == 2
    assert repository.statuses == [("c1", "syncing"), ("c1", "success")]
    assert client.disconnects == 1


def test_sync_one_is_idempotent_when_watermark_is_replayed() -> None:
    configuration = _configuration("c1", "one@example.com")
    repository = FakeRepository(configuration)
    client = FakeMailboxClient([_message(1), _message(2)])
    manager = _manager(repository, {"one@example.com": client})

    first = manager.sync_one(configuration)
    repository.configurations["c1"].last_processed_uid = 0
    second = manager.sync_one(configuration)

    assert first.synced == 2
    assert second.success
    assert second.synced == 0
    assert len(repository.inbox) == 2
    assert repository.configurations["c1"].last_processed_uid == 2
    assert repository.configurations["c1"].messages_synced == 2

def test_repeated_sync_of_quiet_mailbox_changes_nothing() -> None:
    configuration = _configuration(
        "c1", "one@example.com", last_processed_uid=9, messages_synced=5
    )
    repository = FakeRepository(configuration)
    client = FakeMailboxClient([_message(8), _message(9)])
    manager = _manager(repository, {"one@example.com": client})

    first = manager.sync_one(configuration)
    second = manager.sync_one(configuration)

    assert first.success and second.success
    assert first.synced == second.synced == 0
    assert client.fetch_calls == [(9, 50), (9, 50)]
    stored = repository.configurations["c1"]
    assert stored.last_processed_uid == 9
    assert stored.messages_synced == 5
    assert repository.inbox == {}



def test_sync_one_uses_stored_configuration() -> None:
    stale = _configuration("c1", "one@example.com")
    repository = FakeRepository(replace(stale, last_processed_uid=4))
    client = FakeMailboxClient([_message(3), _message(4), _message(6)])

    result = _manager(repository, {"one@example.com": client}).sync_one(stale)

    assert client.fetch_calls == [(4, 50)]
    assert result.synced == 1


def test_sync_one_reports_fetch_failure_and_disconnects() -> None:
    configuration = _configuration("c1", "one@example.com")
    repository = FakeRepository(configuration)
    client = FakeMailboxClient(fetch_error=MailboxConnectionError("SEARCH failed"))

    result = _manager(repository, {"one@example.com": client}).sync_one(configuration)

    assert not result.success
    assert result.error == "SEARCH failed"
    assert client.disconnects == 1
    assert repository.configurations["c1"].last_processed_uid == 0
    assert repository.configurations["c1"].sync_status == "error"


def test_sync_one_with_no_new_messages_marks_success() -> None:
    configuration = _configuration("c1", "one@example.com", last_processed_uid=9)
    repository = FakeRepository(configuration)
    client = FakeMailboxClient([_message(9)])

    result = _manager(repository, {"one@example.com": client}).sync_one(configuration)

    assert result.success
    assert result.synced == 0
    assert repository.configurations["c1"].last_sync_at == NOW


def test_sync_one_archives_new_and_already_processed_messages() -> None:
    configuration = _configuration(
        "c1", "one@example.com", archive_after_import=True, archive_folder="Trades"
    )
    repository = FakeRepository(configuration)
    repository.processed.add(("user-1", "2@broker.example"))
    client = FakeMailboxClient([_message(1), _message(2), _message(3)])

    result = _manager(repository, {"one@example.com": client}).sync_one(configuration)

    assert result.synced == 2
    assert client.moved == [([1, 2, 3], "Trades")]
    assert repository.archived == [
        (
            ["1@broker.example", "2@broker.example", "3@broker.example"],
            "user-1",
            "Trades",
        )
    ]


def test_archive_failure_does_not_fail_sync() -> None:
    configuration = _configuration("c1", "one@example.com", archive_after_import=True)
    repository = FakeRepository(configuration)
    client = FakeMailboxClient(
        [_message(1)], move_error=MailboxConnectionError("MOVE rejected")
    )

    result = _manager(repository, {"one@example.com": client}).sync_one(configuration)

    assert result.success
    assert result.synced == 1
    assert repository.archived == []
    assert repository.configurations["c1"].last_processed_uid == 1


def test_concurrent_sync_of_same_configuration_is_skipped() -> None:
    configuration = _configuration("c1", "one@example.com")
    repository = FakeRepository(configuration)
    client = FakeMailboxClient([_message(1)])
    locks = ConfigurationLocks()
    manager = _manager(repository, {"one@example.com": client}, locks=locks)

    with locks.hold("c1") as acquired:
        assert acquired
        assert locks.is_held("c1")
        result = manager.sync_one(configuration)
        summary = manager.sync_all()

    assert result.skipped
    assert result.error == SYNC_IN_PROGRESS
    assert summary.configurations_skipped == 1
    assert summary.errors == []
    assert client.fetch_calls == []
    assert not locks.is_held("c1")


def test_test_configuration_records_outcome() -> None:
    good = _configuration("c1", "one@example.com")
    down = _configuration("c2", "down@example.com")
    broken = _configuration("c3", "broken@example.com")
    repository = FakeRepository(good, down, broken)
    clients = {
        "one@example.com": FakeMailboxClient(),
        "down@example.com": FakeMailboxClient(healthy=False),
        "broken@example.com": FakeMailboxClient(
            connect_error=MailboxConnectionError("bad credentials")
        ),
    }
    manager = _manager(repository, clients)

    assert manager.test_configuration(good) is True
    assert manager.test_configuration(down) is False
    assert manager.test_configuration(broken) is False

    assert repository.configurations["c1"].sync_status == "success"
    assert repository.configurations["c2"].last_error == "Connection test failed"
    assert repository.configurations["c3"].last_error == "bad credentials"
    assert all(client.disconnects == 1 for client in clients.values())

def test_test_configuration_leaves_in_flight_sync_alone() -> None:
    configuration = _configuration("c1", "one@example.com")
    repository = FakeRepository(configuration)
    client = FakeMailboxClient()
    locks = ConfigurationLocks()
    manager = _manager(repository, {"one@example.com": client}, locks=locks)

    with locks.hold("c1"):
        assert manager.test_configuration(configuration) is False

    assert repository.statuses == []
    assert client.disconnects == 0
    assert manager.test_configuration(configuration) is True
    assert repository.statuses == [("c1", "success")]



def test_get_stats_summarises_configurations() -> None:
    repository = FakeRepository(
        _configuration(
            "c1",
            "one@example.com",
            last_sync_at=NOW - timedelta(minutes=10),
            messages_synced=12,
            sync_status="success",
        ),
        _configuration(
            "c2",
            "two@example.com",
            last_sync_at=NOW - timedelta(hours=3),
            messages_synced=3,
            sync_status="error",
        ),
        _configuration("c3", "three@example.com", is_active=False, messages_synced=99),
    )

    stats = _manager(repository, {}).get_stats()

    assert stats.total_configurations == 2
    assert stats.active_configurations == 2
    assert stats.recent_syncs == 1
    assert stats.total_messages_synced == 15
    assert stats.configurations_with_errors == 1


def test_interval_pacer_sleeps_for_remaining_interval() -> None:
    ticks = iter([100.0, 100.4, 101.0, 105.0])
    sleeps: list[float] = []
    pacer = IntervalPacer(1.0, sleep=sleeps.append, clock=lambda: next(ticks))

    pacer.wait()
    pacer.wait()
    pacer.wait()

    assert sleeps == pytest.approx([0.6])
