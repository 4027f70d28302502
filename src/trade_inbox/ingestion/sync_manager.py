"""Coordinate incremental mailbox syncs across all active configurations."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta

from ..core.datetime_utils import utc_now
from ..core.interfaces import (
    MailboxClient,
    Pacer,
    StorageUnavailableError,
    SyncRepository,
)
from ..core.models import (
    InsertReport,
    MailboxConfiguration,
    MessageRow,
    RawMessage,
    StatsSnapshot,
    SyncResult,
    SyncSummary,
)

LOGGER = logging.getLogger(__name__)

MailboxClientFactory = Callable[[MailboxConfiguration], MailboxClient]

SYNC_IN_PROGRESS = "Sync already in progress"


class IntervalPacer:
    """Enforce a minimum interval between consecutive operations."""

    def __init__(
        self,
        interval_seconds: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Store the interval along with injectable sleep and clock functions."""
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")
        self._interval = interval_seconds
        self._sleep = sleep
        self._clock = clock
        self._last: float | None = None

    def wait(self) -> None:
        """Sleep for whatever remains of the interval since the previous call."""
        now = self._clock()
        if self._last is not None:
            remaining = self._interval - (now - self._last)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last = now


class ConfigurationLocks:
    """One lock per configuration so a mailbox is never synced twice at once."""

    def __init__(self) -> None:
        """Initialise the lock table."""
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, configuration_id: str) -> Iterator[bool]:
        """Try to take the lock without blocking; yields whether it was taken."""
        with self._guard:
            lock = self._locks.setdefault(configuration_id, threading.Lock())
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def is_held(self, configuration_id: str) -> bool:
        """Return ``True`` while a sync for the configuration is in flight."""
        with self._guard:
            lock = self._locks.get(configuration_id)
        return lock is not None and lock.locked()


class MailboxSyncManager:
    """Pull new messages for each mailbox configuration and store them."""

    def __init__(
        self,
        repository: SyncRepository,
        client_factory: MailboxClientFactory,
        *,
        pacer: Pacer | None = None,
        locks: ConfigurationLocks | None = None,
        clock: Callable[[], datetime] = utc_now,
        recent_sync_window: timedelta = timedelta(hours=1),
    ) -> None:
        """Wire the manager to its storage, mailbox factory and throttle."""
        self._repository = repository
        self._client_factory = client_factory
        self._pacer = pacer if pacer is not None else IntervalPacer(1.0)
        self._locks = locks if locks is not None else ConfigurationLocks()
        self._clock = clock
        self._recent_sync_window = recent_sync_window

    # Batch -------------------------------------------------------------------
    def sync_all(self) -> SyncSummary:
        """Sync every active configuration sequentially and summarise."""
        summary = SyncSummary(started_at=self._clock())
        LOGGER.info("Starting email sync for all configurations")

        try:
            configurations = self._load_active_configurations()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Global sync error: %s", exc, exc_info=True)
            summary.errors.append(f"Global sync error: {exc}")
            return self._finalize(summary)

        summary.configurations_total = len(configurations)
        if not configurations:
            LOGGER.info("No active mailbox configurations found")
            return self._finalize(summary)

        LOGGER.info("Found %s active mailbox configurations", len(configurations))
        for configuration in configurations:
            self._pacer.wait()
            result = self.sync_one(configuration)
            summary.results.append(result)
            if result.success:
                summary.total_synced += result.synced
                summary.configurations_synced += 1
                LOGGER.info(
                    "%s: %s message(s) synced", result.email_address, result.synced
                )
            elif result.skipped:
                summary.configurations_skipped += 1
                LOGGER.info("%s: skipped, %s", result.email_address, result.error)
            else:
                summary.errors.append(f"{result.email_address}: {result.error}")
                LOGGER.error("%s: %s", result.email_address, result.error)

        return self._finalize(summary)

    # Single configuration ----------------------------------------------------
    def sync_one(self, configuration: MailboxConfiguration) -> SyncResult:
        """Run one incremental sync; failures are returned, never raised."""
        with self._locks.hold(configuration.id) as acquired:
            if not acquired:
                LOGGER.warning(
                    "Sync for %s is already running; skipping",
                    configuration.email_address,
                )
                return SyncResult(
                    configuration_id=configuration.id,
                    email_address=configuration.email_address,
                    success=False,
                    error=SYNC_IN_PROGRESS,
                    skipped=True,
                )
            return self._sync_locked(configuration)

    def _sync_locked(self, configuration: MailboxConfiguration) -> SyncResult:
        client: MailboxClient | None = None
        try:
            current = self._repository.get_configuration(configuration.id)
            if current is not None:
                configuration = current
            self._repository.update_status(configuration.id, "syncing")

            client = self._client_factory(configuration)
            client.connect()

            last_uid = configuration.last_processed_uid or 0
            LOGGER.debug(
                "Fetching up to %s message(s) above UID %s for %s",
                configuration.max_messages_per_sync,
                last_uid,
                configuration.email_address,
            )
            messages = sorted(
                client.fetch_above_uid(last_uid, configuration.max_messages_per_sync),
                key=lambda message: message.uid,
            )

            if not messages:
                LOGGER.info("No new messages for %s", configuration.email_address)
                self._repository.update_status(configuration.id, "success")
                return SyncResult(
                    configuration_id=configuration.id,
                    email_address=configuration.email_address,
                    success=True,
                )

            rows = [
                client.to_storage_row(message, configuration.user_id)
                for message in messages
            ]
            report = self._repository.insert_messages(rows)
            LOGGER.debug(
                "Inserted %s of %s fetched message(s) for %s",
                report.inserted,
                len(messages),
                configuration.email_address,
            )

            if configuration.archive_after_import:
                self._archive(client, configuration, messages, rows, report)

            highest_uid = messages[-1].uid
            if highest_uid > last_uid:
                self._repository.update_watermark(configuration.id, highest_uid)
                LOGGER.debug(
                    "Advanced watermark to UID %s for %s",
                    highest_uid,
                    configuration.email_address,
                )

            if report.inserted:
                self._repository.increment_synced_count(
                    configuration.id, report.inserted
                )
            self._repository.update_status(configuration.id, "success")
            LOGGER.info(
                "Synced %s message(s) for %s",
                report.inserted,
                configuration.email_address,
            )
            return SyncResult(
                configuration_id=configuration.id,
                email_address=configuration.email_address,
                success=True,
                synced=report.inserted,
            )
        except Exception as exc:  # pylint: disable=broad-except
            message = str(exc) or exc.__class__.__name__
            LOGGER.error(
                "Failed to sync %s: %s",
                configuration.email_address,
                message,
                exc_info=True,
            )
            self._record_error(configuration, message)
            return SyncResult(
                configuration_id=configuration.id,
                email_address=configuration.email_address,
                success=False,
                error=message,
            )
        finally:
            if client is not None:
                _disconnect_quietly(client)

    def _archive(
        self,
        client: MailboxClient,
        configuration: MailboxConfiguration,
        messages: Sequence[RawMessage],
        rows: Sequence[MessageRow],
        report: InsertReport,
    ) -> None:
        """Move acknowledged messages to the archive folder, best effort."""
        inserted = set(report.message_ids)
        to_archive: list[tuple[int, str]] = []
        try:
            for message, row in zip(messages, rows):
                if row.message_id in inserted or self._repository.exists_in_processed(
                    row.message_id, configuration.user_id
                ):
                    to_archive.append((message.uid, row.message_id))

            if not to_archive:
                return

            uids = [uid for uid, _ in to_archive]
            client.move_to_folder(uids, configuration.archive_folder)
            newly_inserted = sum(1 for _, mid in to_archive if mid in inserted)
            LOGGER.info(
                "Moved %s message(s) to %s for %s (%s new, %s already processed)",
                len(uids),
                configuration.archive_folder,
                configuration.email_address,
                newly_inserted,
                len(uids) - newly_inserted,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Failed to archive messages for %s: %s",
                configuration.email_address,
                exc,
            )
            return

        try:
            marked = self._repository.mark_archived(
                [message_id for _, message_id in to_archive],
                configuration.user_id,
                configuration.archive_folder,
            )
            LOGGER.info("Marked %s message(s) as archived in storage", marked)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Could not mark messages as archived for %s: %s",
                configuration.email_address,
                exc,
            )

    def _record_error(self, configuration: MailboxConfiguration, message: str) -> None:
        try:
            self._repository.update_status(configuration.id, "error", message)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Could not record error status for %s: %s",
                configuration.email_address,
                exc,
            )

    # Health checks -----------------------------------------------------------
    def test_configuration(self, configuration: MailboxConfiguration) -> bool:
        """Check connectivity for a configuration and record the outcome.

        A configuration with a sync in flight is left untouched and reported
        as failing the test.
        """
        with self._locks.hold(configuration.id) as acquired:
            if not acquired:
                LOGGER.warning(
                    "Skipping connection test for %s: sync in progress",
                    configuration.email_address,
                )
                return False
            return self._test_connection(configuration)

    def _test_connection(self, configuration: MailboxConfiguration) -> bool:
        LOGGER.info("Testing mailbox connection for %s", configuration.email_address)
        client: MailboxClient | None = None
        try:
            client = self._client_factory(configuration)
            connected = client.test_connection()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Connection test failed for %s: %s", configuration.email_address, exc
            )
            self._record_error(configuration, str(exc) or exc.__class__.__name__)
            return False
        finally:
            if client is not None:
                _disconnect_quietly(client)

        if connected:
            LOGGER.info("Connection test succeeded for %s", configuration.email_address)
            self._repository.update_status(configuration.id, "success")
            return True

        LOGGER.error("Connection test failed for %s", configuration.email_address)
        self._record_error(configuration, "Connection test failed")
        return False

    def get_stats(self) -> StatsSnapshot:
        """Summarise sync health over the active configurations."""
        configurations = self._repository.list_active_configurations()
        threshold = self._clock() - self._recent_sync_window
        return StatsSnapshot(
            total_configurations=len(configurations),
            active_configurations=sum(1 for c in configurations if c.is_active),
            recent_syncs=sum(
                1
                for c in configurations
                if c.last_sync_at is not None and c.last_sync_at > threshold
            ),
            total_messages_synced=sum(c.messages_synced for c in configurations),
            configurations_with_errors=sum(
                1 for c in configurations if c.sync_status == "error"
            ),
        )

    # Helpers -----------------------------------------------------------------
    def _load_active_configurations(self) -> list[MailboxConfiguration]:
        if not self._repository.test_connection():
            raise StorageUnavailableError("Database connection failed")
        return self._repository.list_active_configurations()

    def _finalize(self, summary: SyncSummary) -> SyncSummary:
        summary.finished_at = self._clock()
        LOGGER.info(
            "Sync completed in %.3fs: %s message(s), %s/%s configuration(s)",
            summary.duration.total_seconds(),
            summary.total_synced,
            summary.configurations_synced,
            summary.configurations_total,
        )
        if summary.errors:
            LOGGER.warning("Sync finished with %s error(s)", len(summary.errors))
        return summary


def _disconnect_quietly(client: MailboxClient) -> None:
    try:
        client.disconnect()
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.debug("Mailbox disconnect raised; ignoring: %s", exc)


__all__ = [
    "ConfigurationLocks",
    "IntervalPacer",
    "MailboxClientFactory",
    "MailboxSyncManager",
    "SYNC_IN_PROGRESS",
]
