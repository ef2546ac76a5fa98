"""CLI for dedup-store.

Commands:
    init-db                          - Create database tables
    ingest <path> -t TENANT [-o ID]  - Ingest files (owner defaults to the file path)
    release <owner>                  - Release an owner's reference
    refcount <fingerprint>           - Show a blob's reference count
    quota <tenant>                   - Show a tenant's storage usage
    set-tier <tenant> <tier>         - Change a tenant's tier / quota override
    audit                            - Verify reference counts and quota totals
    reap [--interval SECONDS]        - Complete abandoned rollbacks, remove unowned bytes
    serve                            - Run the HTTP API
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from dedup_store.config import settings
from dedup_store.db import async_session_factory, engine, init_db
from dedup_store.errors import DedupError
from dedup_store.fingerprint import hash_prefix
from dedup_store.models.enums import TenantTier
from dedup_store.services.audit import IntegrityAuditor
from dedup_store.services.dedup import DedupService
from dedup_store.services.quota import format_bytes
from dedup_store.services.reaper import CompensationReaper
from dedup_store.storage.files import BlobFileStore

app = typer.Typer(
    name="dedup-store",
    help="dedup-store: deduplicating content store with reference counting and quota",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    log_level: Annotated[
        str, typer.Option("--log-level", help="Logging level")
    ] = settings.log_level,
) -> None:
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def run_async(coro):
    """Run an async coroutine in sync context, disposing the engine afterwards."""

    async def _wrapped():
        try:
            return await coro
        finally:
            await engine.dispose()

    return asyncio.run(_wrapped())


def build_service() -> DedupService:
    files = BlobFileStore(settings.storage_root)
    files.ensure_dirs()
    return DedupService(async_session_factory, files)


@app.command("init-db")
def init_db_command():
    """Create all database tables."""
    run_async(init_db())
    console.print("[green]Database initialised.[/green]")


@app.command()
def ingest(
    paths: Annotated[list[Path], typer.Argument(help="Files to ingest")],
    tenant: Annotated[str, typer.Option("--tenant", "-t", help="Tenant charged for storage")],
    owner: Annotated[
        str | None,
        typer.Option("--owner", "-o", help="Owner ID (only valid with a single file)"),
    ] = None,
):
    """Ingest files, deduplicating identical content."""
    if owner is not None and len(paths) > 1:
        console.print("[red]Error:[/red] --owner can only be used with a single file")
        raise typer.Exit(1)

    async def _ingest() -> int:
        await init_db()
        service = build_service()
        failures = 0
        for path in paths:
            if not path.is_file():
                console.print(f"[red]Error:[/red] Not a file: {path}")
                failures += 1
                continue
            owner_id = owner or str(path.absolute())
            console.print(f"  Ingesting: {path.name}...", end=" ")
            try:
                with path.open("rb") as handle:
                    result = await service.ingest(
                        tenant, owner_id, handle, path.stat().st_size
                    )
            except DedupError as e:
                console.print(f"[red]{e.kind.value.upper()}[/red]: {e.message}")
                for failure in e.rollback_failures:
                    console.print(f"    [red]rollback failure:[/red] {failure}")
                failures += 1
                continue
            label = "[yellow]DEDUP[/yellow]" if result.deduplicated else "[green]NEW[/green]"
            console.print(f"{label} → {hash_prefix(result.fingerprint)}")
        return failures

    failures = run_async(_ingest())
    if failures:
        raise typer.Exit(1)


@app.command()
def release(owner: Annotated[str, typer.Argument(help="Owner ID to release")]):
    """Release an owner's reference. Releasing twice is a no-op."""

    async def _release():
        service = build_service()
        return await service.release(owner)

    try:
        result = run_async(_release())
    except DedupError as e:
        console.print(f"[red]{e.kind.value.upper()}[/red]: {e.message}")
        raise typer.Exit(1) from e

    if not result.released:
        console.print(f"[yellow]Nothing to release for owner {owner}[/yellow]")
        return
    console.print(
        f"Released {owner} from {hash_prefix(result.fingerprint)} "
        f"(remaining references: {result.reference_count})"
    )
    if result.blob_deleted:
        console.print("[dim]Blob had no remaining references and was deleted.[/dim]")


@app.command()
def refcount(fingerprint: Annotated[str, typer.Argument(help="SHA-256 fingerprint")]):
    """Show the reference count of a blob."""
    count = run_async(build_service().get_reference_count(fingerprint))
    console.print(f"{fingerprint}: {count}")


@app.command()
def quota(tenant: Annotated[str, typer.Argument(help="Tenant ID")]):
    """Show storage usage for a tenant."""
    try:
        usage = run_async(build_service().quota_usage(tenant))
    except DedupError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from e

    panel_content = [
        f"[bold]Tenant:[/bold] {usage.tenant_id}",
        f"[bold]Tier:[/bold] {usage.tier.value}",
        f"[bold]Consumed:[/bold] {format_bytes(usage.bytes_consumed)}",
        f"[bold]Reserved:[/bold] {format_bytes(usage.bytes_reserved)}",
        f"[bold]Quota:[/bold] {format_bytes(usage.quota_bytes)}",
        f"[bold]Available:[/bold] {format_bytes(usage.available_bytes)}",
        f"[bold]Used:[/bold] {usage.percent_used:.1f}%",
    ]
    console.print(Panel("\n".join(panel_content), title="Quota"))


@app.command("set-tier")
def set_tier(
    tenant: Annotated[str, typer.Argument(help="Tenant ID")],
    tier: Annotated[TenantTier, typer.Argument(help="New tier")],
    override: Annotated[
        int | None, typer.Option("--override", help="Per-tenant quota in bytes")
    ] = None,
):
    """Change a tenant's tier."""

    async def _set():
        await init_db()
        return await build_service().set_tenant_tier(tenant, tier, quota_override_bytes=override)

    usage = run_async(_set())
    console.print(
        f"Tenant {tenant} is now [bold]{usage.tier.value}[/bold] "
        f"({format_bytes(usage.quota_bytes)})"
    )


@app.command()
def audit():
    """Verify reference counts, references and quota totals."""
    report = run_async(IntegrityAuditor(async_session_factory).verify())

    console.print(
        f"Checked {report.blobs_checked} blob(s) and {report.tenants_checked} tenant(s)"
    )
    if report.ok:
        console.print("[green]No inconsistencies found.[/green]")
        return

    table = Table(title="Integrity findings")
    table.add_column("Check")
    table.add_column("Message")
    for finding in report.findings:
        table.add_row(finding.check, finding.message)
    console.print(table)
    raise typer.Exit(2)


@app.command()
def reap(
    grace: Annotated[
        float | None,
        typer.Option("--grace", help="Seconds before a pending ingestion counts as abandoned"),
    ] = None,
    interval: Annotated[
        float | None,
        typer.Option("--interval", help="Keep running, one pass every INTERVAL seconds"),
    ] = None,
):
    """Complete abandoned rollbacks and remove unowned bytes."""
    files = BlobFileStore(settings.storage_root)
    reaper = CompensationReaper(async_session_factory, files, grace_seconds=grace)
    if interval is not None:
        console.print(f"Reaping every {interval}s (Ctrl+C to stop)")
        try:
            run_async(reaper.run_forever(interval))
        except KeyboardInterrupt:
            console.print("[dim]Reaper stopped.[/dim]")
        return

    report = run_async(reaper.run_once())

    table = Table(title="Reaper pass")
    table.add_column("Action")
    table.add_column("Count", justify="right")
    for key, value in report.to_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port")] = 8000,
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("dedup_store.app:app", host=host, port=port)


if __name__ == "__main__":
    app()
