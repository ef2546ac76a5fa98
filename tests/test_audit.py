"""Tests for integrity auditing."""

from __future__ import annotations

from sqlalchemy import update

from dedup_store.errors import IntegrityViolation
from dedup_store.models import ContentBlob, QuotaLedgerEntry
from dedup_store.services.audit import IntegrityAuditor
from dedup_store.services.dedup import DedupService


async def test_clean_store_passes(service: DedupService, session_factory) -> None:
    await service.ingest("acme", "owner-a", b"hello", 5)
    await service.ingest("globex", "owner-b", b"hello", 5)

    report = await IntegrityAuditor(session_factory).verify()

    assert report.ok
    assert report.blobs_checked == 1
    assert report.tenants_checked == 2


async def test_count_drift_is_reported_and_recorded(
    service: DedupService, session_factory
) -> None:
    result = await service.ingest("acme", "owner-a", b"hello", 5)
    async with session_factory() as session, session.begin():
        await session.execute(
            update(ContentBlob)
            .where(ContentBlob.fingerprint == result.fingerprint)
            .values(reference_count=3)
        )
    auditor = IntegrityAuditor(session_factory)

    report = await auditor.verify()

    assert [f.check for f in report.findings] == ["reference_count"]
    assert report.findings[0].details == {"reference_count": 3, "references": 1}
    incidents = await auditor.list_incidents()
    assert len(incidents) == 1
    assert incidents[0].fingerprint == result.fingerprint


async def test_quota_drift_is_reported(service: DedupService, session_factory) -> None:
    await service.ingest("acme", "owner-a", b"hello", 5)
    async with session_factory() as session, session.begin():
        await session.execute(
            update(QuotaLedgerEntry)
            .where(QuotaLedgerEntry.tenant_id == "acme")
            .values(bytes_consumed=99)
        )

    report = await IntegrityAuditor(session_factory).verify(record=False)

    assert [f.check for f in report.findings] == ["quota_total"]
    assert report.findings[0].details["charged"] == 5
    assert await IntegrityAuditor(session_factory).list_incidents() == []


async def test_record_persists_violation(session_factory) -> None:
    auditor = IntegrityAuditor(session_factory)
    error = IntegrityViolation("count went negative", fingerprint="ab" * 32, owner_id="o1")

    incident_id = await auditor.record(error)

    incidents = await auditor.list_incidents()
    assert [i.incident_id for i in incidents] == [incident_id]
    assert incidents[0].owner_id == "o1"
    assert incidents[0].details["fingerprint"] == "ab" * 32
