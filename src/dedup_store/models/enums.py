"""Enumerations for the dedup-store data model."""

from enum import Enum


class TenantTier(str, Enum):
    """Subscription tier of a tenant. Determines the default storage quota."""

    FREE = "free"
    BASIC_PLUS = "basic_plus"
    STANDARD = "standard"
    PREMIUM = "premium"


class JournalStatus(str, Enum):
    """Lifecycle status of an IngestJournal entry."""

    PENDING = "pending"  # Reservation held, forward path in flight
    COMMITTED = "committed"  # Reference durably written
    ROLLED_BACK = "rolled_back"  # Reservation released, staging discarded


class IngestState(str, Enum):
    """States of one ingestion transaction.

    reserving → hashing → lookup → create_new | attach_existing → committed
    Any state after reserving may move to rolling_back → failed.
    """

    RESERVING = "reserving"
    HASHING = "hashing"
    LOOKUP = "lookup"
    CREATE_NEW = "create_new"
    ATTACH_EXISTING = "attach_existing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"
