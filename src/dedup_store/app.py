"""FastAPI application for dedup-store."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dedup_store import __version__
from dedup_store.config import settings
from dedup_store.db import async_session_factory, init_db
from dedup_store.errors import DedupError, ErrorKind
from dedup_store.fingerprint import is_fingerprint
from dedup_store.models.enums import TenantTier
from dedup_store.services.audit import IntegrityAuditor
from dedup_store.services.dedup import DedupService
from dedup_store.services.limits import TierQuotaProvider
from dedup_store.services.reaper import CompensationReaper
from dedup_store.storage.files import BlobFileStore
from dedup_store.utils.locks import KeyedLock

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.SIZE_MISMATCH: 400,
    ErrorKind.WRITE_FAILED: 503,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.OWNER_CONFLICT: 409,
    ErrorKind.QUOTA_EXCEEDED: 507,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTEGRITY_VIOLATION: 500,
}


class TierUpdate(BaseModel):
    tier: TenantTier
    quota_override_bytes: int | None = Field(default=None, ge=0)


def create_app(
    *,
    dedup: DedupService | None = None,
    reaper: CompensationReaper | None = None,
    auditor: IntegrityAuditor | None = None,
) -> FastAPI:
    """Build the app. Services default to ones built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        if dedup is None:
            await init_db()
            files = BlobFileStore(settings.storage_root)
            files.ensure_dirs()
            locks = KeyedLock()
            limits = TierQuotaProvider(async_session_factory)
            app.state.dedup = DedupService(
                async_session_factory, files, limits=limits, locks=locks
            )
            app.state.reaper = CompensationReaper(
                async_session_factory, files, limits=limits, locks=locks
            )
            app.state.auditor = IntegrityAuditor(async_session_factory)
        yield

    app = FastAPI(
        title="dedup-store",
        description="Deduplicating content store with reference counting and quota",
        version=__version__,
        lifespan=lifespan,
    )
    if dedup is not None:
        app.state.dedup = dedup
        app.state.reaper = reaper
        app.state.auditor = auditor

    @app.exception_handler(DedupError)
    async def dedup_error_handler(request: Request, exc: DedupError) -> JSONResponse:
        return JSONResponse(status_code=ERROR_STATUS[exc.kind], content={"error": exc.to_dict()})

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.put("/tenants/{tenant_id}/owners/{owner_id}", status_code=201)
    async def ingest(
        tenant_id: str,
        owner_id: str,
        request: Request,
        content_length: int | None = Header(default=None),
        x_declared_size: int | None = Header(default=None),
    ) -> dict[str, object]:
        """Ingest the raw request body as owner_id's content."""
        declared = x_declared_size if x_declared_size is not None else content_length
        if declared is None:
            raise HTTPException(status_code=411, detail="Declared size required")
        result = await request.app.state.dedup.ingest(
            tenant_id, owner_id, request.stream(), declared
        )
        return result.to_dict()

    @app.delete("/owners/{owner_id}")
    async def release(owner_id: str, request: Request) -> dict[str, object]:
        result = await request.app.state.dedup.release(owner_id)
        return result.to_dict()

    @app.get("/blobs/{fingerprint}")
    async def reference_count(fingerprint: str, request: Request) -> dict[str, object]:
        if not is_fingerprint(fingerprint):
            raise HTTPException(status_code=400, detail="Not a SHA-256 hex fingerprint")
        count = await request.app.state.dedup.get_reference_count(fingerprint)
        return {"fingerprint": fingerprint, "reference_count": count}

    @app.get("/tenants/{tenant_id}/quota")
    async def quota(tenant_id: str, request: Request) -> dict[str, object]:
        usage = await request.app.state.dedup.quota_usage(tenant_id)
        return usage.to_dict()

    @app.put("/tenants/{tenant_id}/tier")
    async def set_tier(tenant_id: str, body: TierUpdate, request: Request) -> dict[str, object]:
        usage = await request.app.state.dedup.set_tenant_tier(
            tenant_id, body.tier, quota_override_bytes=body.quota_override_bytes
        )
        return usage.to_dict()

    @app.post("/admin/audit")
    async def audit(request: Request) -> dict[str, object]:
        report = await request.app.state.auditor.verify()
        return {
            "ok": report.ok,
            "blobs_checked": report.blobs_checked,
            "tenants_checked": report.tenants_checked,
            "findings": [
                {"check": f.check, "message": f.message, "fingerprint": f.fingerprint}
                for f in report.findings
            ],
        }

    @app.post("/admin/reap")
    async def reap(request: Request) -> dict[str, int]:
        report = await request.app.state.reaper.run_once()
        return report.to_dict()

    return app


app = create_app()
