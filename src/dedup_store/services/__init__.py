"""Business logic services for dedup-store."""

from dedup_store.services.audit import AuditReport, IntegrityAuditor
from dedup_store.services.dedup import DedupService, ReleaseResult
from dedup_store.services.ingestion import IngestResult
from dedup_store.services.ledger import DetachResult, ReferenceLedger
from dedup_store.services.limits import DEFAULT_TIER_QUOTAS, TierQuotaProvider
from dedup_store.services.quota import (
    QuotaAccountant,
    QuotaUsage,
    chargeable_bytes,
    format_bytes,
    usage_percentage,
)
from dedup_store.services.reaper import CompensationReaper, ReapReport

__all__ = [
    "AuditReport",
    "chargeable_bytes",
    "CompensationReaper",
    "DedupService",
    "DEFAULT_TIER_QUOTAS",
    "DetachResult",
    "format_bytes",
    "IngestResult",
    "IntegrityAuditor",
    "QuotaAccountant",
    "QuotaUsage",
    "ReapReport",
    "ReferenceLedger",
    "ReleaseResult",
    "TierQuotaProvider",
    "usage_percentage",
]
