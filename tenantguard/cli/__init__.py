"""
tenantguard - Operator command line interface

Maintenance jobs that have no HTTP surface: schema creation, audit
retention, seat-count repair and configuration inspection.

Usage:
    $ tenantguard init-db
    $ tenantguard audit prune --days 90
    $ tenantguard audit stats --days 7
    $ tenantguard audit export --out audit.csv
    $ tenantguard tenants list
    $ tenantguard tenants recount --all
    $ tenantguard config show

Sub-command Groups:
    audit   - Audit log retention and reporting
    tenants - Tenant inspection and repair
    config  - Configuration inspection
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from tenantguard import __version__
from tenantguard.audit.log import AuditLog
from tenantguard.cli.output import (
    console,
    print_error,
    print_stats,
    print_success,
    print_tenants,
    print_warning,
)
from tenantguard.config.settings import settings
from tenantguard.exceptions import NotFoundError, StorageFailure
from tenantguard.multitenancy.lifecycle import TenantLifecycleManager
from tenantguard.multitenancy.principal import Principal, Role
from tenantguard.security.authorization import AuthorizationEngine
from tenantguard.storage.base import Storage

# Identity under which operator reads run and are audited.
OPERATOR = Principal(id="system:cli", email="cli@localhost", role=Role.MASTER)

app = typer.Typer(
    name="tenantguard",
    help="tenantguard - tenant isolation, authorization and audit engine",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
)

audit_app = typer.Typer(name="audit", help="Audit log retention and reporting", no_args_is_help=True)
tenants_app = typer.Typer(name="tenants", help="Tenant inspection and repair", no_args_is_help=True)
config_app = typer.Typer(name="config", help="Configuration inspection", no_args_is_help=True)

app.add_typer(audit_app, name="audit")
app.add_typer(tenants_app, name="tenants")
app.add_typer(config_app, name="config")


def _storage() -> Storage:
    from tenantguard.db import async_session
    from tenantguard.storage.sql import SQLAlchemyStorage

    return SQLAlchemyStorage(async_session)


def _lifecycle(storage: Storage) -> TenantLifecycleManager:
    audit_log = AuditLog(storage)
    return TenantLifecycleManager(
        storage,
        AuthorizationEngine(audit_log),
        audit_log,
        quotas=settings.PLAN_QUOTAS,
    )


def _run(coro):
    """Run a coroutine, turning store errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except StorageFailure as exc:
        print_error(str(exc), hint="Check DATABASE_URL and that the database is reachable.")
        raise typer.Exit(code=1)
    except NotFoundError as exc:
        print_error(str(exc))
        raise typer.Exit(code=1)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"tenantguard version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    if value:
        logging.basicConfig(level=logging.DEBUG)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable debug logging.",
    ),
) -> None:
    """tenantguard operator tools."""


@app.command("init-db")
def init_db() -> None:
    """Create the tenantguard tables on the configured database."""
    from tenantguard.db import create_tables

    _run(create_tables())
    print_success("Database schema is up to date")


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------

@audit_app.command("prune")
def audit_prune(
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        min=0,
        help="Days of events to keep. Defaults to AUDIT_RETENTION_DAYS.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete audit events older than the retention window. Irreversible."""
    retention = settings.AUDIT_RETENTION_DAYS if days is None else days
    if not yes:
        typer.confirm(f"Delete audit events older than {retention} days?", abort=True)

    removed = _run(AuditLog(_storage()).prune(retention))
    print_success(f"Pruned {removed} audit events", details=f"retention: {retention} days")


@audit_app.command("stats")
def audit_stats(
    days: int = typer.Option(30, "--days", "-d", min=1, help="Size of the window in days."),
) -> None:
    """Show audit event counts for the last N days."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    stats = _run(AuditLog(_storage()).stats(OPERATOR, date_from=since))
    if stats.total_count == 0:
        print_warning(f"No audit events in the last {days} days")
        return
    print_stats(stats)


@audit_app.command("export")
def audit_export(
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write CSV here instead of stdout."),
) -> None:
    """Export the most recent audit events as CSV."""
    text = _run(AuditLog(_storage()).export_csv(OPERATOR))
    if out is None:
        typer.echo(text, nl=False)
        return
    out.write_text(text, encoding="utf-8")
    print_success(f"Wrote {len(text.splitlines()) - 1} events to {out}")


# ---------------------------------------------------------------------------
# tenants
# ---------------------------------------------------------------------------

@tenants_app.command("list")
def tenants_list() -> None:
    """List every tenant with its plan, status and seat usage."""
    tenants = _run(_lifecycle(_storage()).list_tenants(OPERATOR))
    if not tenants:
        print_warning("No tenants")
        return
    print_tenants(tenants)


async def _recount(storage: Storage, tenant_ids: list[str]) -> list[tuple[str, int, int]]:
    lifecycle = _lifecycle(storage)
    results = []
    for tenant_id in tenant_ids:
        tenant = await storage.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        actual = await lifecycle.recompute_user_count(tenant_id)
        results.append((tenant_id, tenant.current_users, actual))
    return results


async def _all_tenant_ids(storage: Storage) -> list[str]:
    return [tenant.id for tenant in await storage.list_tenants()]


@tenants_app.command("recount")
def tenants_recount(
    tenant_id: Optional[str] = typer.Argument(None, help="Tenant to repair."),
    all_tenants: bool = typer.Option(False, "--all", "-a", help="Repair every tenant."),
) -> None:
    """Recount active principals and repair stored seat counts."""
    if (tenant_id is None) == (not all_tenants):
        print_error("Give exactly one of TENANT_ID or --all")
        raise typer.Exit(code=2)

    storage = _storage()
    ids = _run(_all_tenant_ids(storage)) if all_tenants else [tenant_id]
    results = _run(_recount(storage, ids))

    repaired = 0
    table = Table(title="Seat counts")
    table.add_column("Tenant", style="dim")
    table.add_column("Stored", justify="right")
    table.add_column("Actual", justify="right")
    for tid, stored, actual in results:
        if stored != actual:
            repaired += 1
            table.add_row(tid, f"[yellow]{stored}[/yellow]", f"[green]{actual}[/green]")
        else:
            table.add_row(tid, str(stored), str(actual))
    console.print(table)
    print_success(f"Repaired {repaired} of {len(results)} tenants")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

@config_app.command("show")
def config_show() -> None:
    """Show the effective configuration. Passwords are masked."""
    from sqlalchemy.engine import make_url

    table = Table(title="tenantguard configuration")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value")

    for name, value in settings.model_dump().items():
        if name == "DATABASE_URL":
            value = make_url(value).render_as_string(hide_password=True)
        table.add_row(name, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
