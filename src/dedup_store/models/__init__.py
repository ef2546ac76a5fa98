"""Database models for dedup-store."""

from dedup_store.models.base import Base
from dedup_store.models.blob import ContentBlob
from dedup_store.models.enums import IngestState, JournalStatus, TenantTier
from dedup_store.models.incident import IntegrityIncident
from dedup_store.models.journal import IngestJournal
from dedup_store.models.quota import QuotaLedgerEntry, TierQuota
from dedup_store.models.reference import Reference

__all__ = [
    "Base",
    "ContentBlob",
    "IngestJournal",
    "IngestState",
    "IntegrityIncident",
    "JournalStatus",
    "QuotaLedgerEntry",
    "Reference",
    "TenantTier",
    "TierQuota",
]
