"""Integrity auditing.

Detected inconsistencies are never repaired automatically. They are logged at
CRITICAL and written to ``integrity_incidents`` so an operator can decide what
to do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup_store.errors import IntegrityViolation
from dedup_store.models.blob import ContentBlob
from dedup_store.models.incident import IntegrityIncident
from dedup_store.models.quota import QuotaLedgerEntry
from dedup_store.models.reference import Reference

logger = logging.getLogger(__name__)


@dataclass
class AuditFinding:
    """One inconsistency found by verify()."""

    check: str
    message: str
    fingerprint: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditReport:
    blobs_checked: int = 0
    tenants_checked: int = 0
    findings: list[AuditFinding] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.findings


class IntegrityAuditor:
    """Records integrity incidents and verifies the store's invariants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, error: IntegrityViolation) -> UUID | None:
        """Persist an incident for an IntegrityViolation raised by an operation.

        Runs in its own session because the failing operation's transaction
        has been rolled back.
        """
        logger.critical("Integrity violation: %s %s", error.message, error.details)
        return await self._write(
            message=error.message,
            fingerprint=error.details.get("fingerprint"),
            owner_id=error.details.get("owner_id"),
            details={k: _jsonable(v) for k, v in error.details.items()},
        )

    async def verify(self, *, record: bool = True) -> AuditReport:
        """Check counts, referential integrity and quota totals."""
        report = AuditReport()
        async with self._session_factory() as session:
            await self._check_reference_counts(session, report)
            await self._check_dangling_references(session, report)
            await self._check_quota_totals(session, report)

        for finding in report.findings:
            logger.critical("Audit finding [%s]: %s", finding.check, finding.message)
            if record:
                await self._write(
                    message=f"[{finding.check}] {finding.message}",
                    fingerprint=finding.fingerprint,
                    owner_id=finding.details.get("owner_id"),
                    details=finding.details,
                )
        return report

    async def list_incidents(self, limit: int = 50) -> list[IntegrityIncident]:
        async with self._session_factory() as session:
            stmt = (
                select(IntegrityIncident)
                .order_by(IntegrityIncident.created_at.desc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def _check_reference_counts(self, session: AsyncSession, report: AuditReport) -> None:
        ref_counts = (
            select(Reference.fingerprint, func.count().label("n"))
            .group_by(Reference.fingerprint)
            .subquery()
        )
        stmt = select(
            ContentBlob.fingerprint,
            ContentBlob.reference_count,
            func.coalesce(ref_counts.c.n, 0),
        ).outerjoin(ref_counts, ref_counts.c.fingerprint == ContentBlob.fingerprint)

        for fp, stored, actual in (await session.execute(stmt)).all():
            report.blobs_checked += 1
            if stored != actual:
                report.findings.append(
                    AuditFinding(
                        check="reference_count",
                        message=f"Blob {fp[:16]}... has reference_count {stored} "
                        f"but {actual} reference(s)",
                        fingerprint=fp,
                        details={"reference_count": stored, "references": actual},
                    )
                )
            elif stored == 0:
                report.findings.append(
                    AuditFinding(
                        check="zero_reference_blob",
                        message=f"Blob {fp[:16]}... has no references and was not reaped",
                        fingerprint=fp,
                    )
                )

    async def _check_dangling_references(
        self, session: AsyncSession, report: AuditReport
    ) -> None:
        stmt = (
            select(Reference.owner_id, Reference.fingerprint)
            .outerjoin(ContentBlob, ContentBlob.fingerprint == Reference.fingerprint)
            .where(ContentBlob.fingerprint.is_(None))
        )
        for owner_id, fp in (await session.execute(stmt)).all():
            report.findings.append(
                AuditFinding(
                    check="dangling_reference",
                    message=f"Owner {owner_id} references missing blob {fp[:16]}...",
                    fingerprint=fp,
                    details={"owner_id": owner_id},
                )
            )

    async def _check_quota_totals(self, session: AsyncSession, report: AuditReport) -> None:
        charged = (
            select(Reference.tenant_id, func.sum(Reference.charged_bytes).label("total"))
            .group_by(Reference.tenant_id)
            .subquery()
        )
        stmt = select(
            QuotaLedgerEntry.tenant_id,
            QuotaLedgerEntry.bytes_consumed,
            func.coalesce(charged.c.total, 0),
        ).outerjoin(charged, charged.c.tenant_id == QuotaLedgerEntry.tenant_id)

        for tenant_id, consumed, total in (await session.execute(stmt)).all():
            report.tenants_checked += 1
            if consumed != total:
                report.findings.append(
                    AuditFinding(
                        check="quota_total",
                        message=f"Tenant {tenant_id} has bytes_consumed {consumed} "
                        f"but references charged {total}",
                        details={"tenant_id": tenant_id, "consumed": consumed, "charged": total},
                    )
                )

    async def _write(
        self,
        *,
        message: str,
        fingerprint: str | None,
        owner_id: str | None,
        details: dict[str, Any],
    ) -> UUID | None:
        incident_id = uuid4()
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    IntegrityIncident(
                        incident_id=incident_id,
                        fingerprint=fingerprint,
                        owner_id=owner_id,
                        message=message,
                        details=details,
                    )
                )
        except SQLAlchemyError:
            logger.critical("Failed to record integrity incident: %s", message, exc_info=True)
            return None
        return incident_id


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
