"""Ingestion pipeline components."""

from .identification import compare, detection_profile, identify, validate
from .parser import EmailParser
from .sync_manager import ConfigurationLocks, IntervalPacer, MailboxSyncManager

__all__ = [
    "ConfigurationLocks",
    "EmailParser",
    "IntervalPacer",
    "MailboxSyncManager",
    "compare",
    "detection_profile",
    "identify",
    "validate",
]
