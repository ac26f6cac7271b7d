"""
tenantguard CLI - Rich output helpers

Functions:
    print_tenants  - Tenant overview table
    print_stats    - Audit statistics tables
    print_success  - Success message
    print_warning  - Warning message
    print_error    - Error message on stderr
"""

from __future__ import annotations

from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from tenantguard.audit.events import AuditStats
from tenantguard.multitenancy.tenant import Tenant, TenantStatus

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    TenantStatus.ACTIVE: "green",
    TenantStatus.TRIAL: "cyan",
    TenantStatus.SUSPENDED: "red",
    TenantStatus.INACTIVE: "dim",
}

def print_tenants(tenants: Sequence[Tenant]) -> None:
    table = Table(title=f"Tenants ({len(tenants)})")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Plan")
    table.add_column("Status")
    table.add_column("Seats", justify="right")

    for tenant in tenants:
        style = _STATUS_STYLES.get(tenant.status, "")
        seats = f"{tenant.current_users}/{tenant.max_users}"
        if tenant.current_users > tenant.max_users:
            seats = f"[yellow]{seats}[/yellow]"
        table.add_row(
            tenant.id,
            tenant.name,
            tenant.plan.value,
            f"[{style}]{tenant.status.value}[/{style}]" if style else tenant.status.value,
            seats,
        )
    console.print(table)

def _counts_table(title: str, counts: dict[str, int]) -> Table:
    table = Table(title=title)
    table.add_column("Key", style="cyan")
    table.add_column("Events", justify="right")
    for key, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True):
        table.add_row(key, str(count))
    return table

def print_stats(stats: AuditStats) -> None:
    """Print totals, per-kind and per-resource counts and the daily series."""
    console.print(f"[bold]Total events:[/bold] {stats.total_count}")
    console.print(_counts_table("By kind", stats.counts_by_kind))
    console.print(_counts_table("By resource type", stats.counts_by_resource_type))

    daily = Table(title="Per day (UTC)")
    daily.add_column("Date")
    daily.add_column("Events", justify="right")
    for day, count in stats.daily_counts:
        daily.add_row(day.isoformat(), str(count))
    console.print(daily)

def print_success(message: str, details: Optional[str] = None) -> None:
    console.print(f"[bold green]Success:[/bold green] {message}")
    if details:
        console.print(f"[dim]{details}[/dim]")

def print_warning(message: str) -> None:
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")

def print_error(message: str, hint: Optional[str] = None) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    if hint:
        err_console.print(f"[yellow]Hint:[/yellow] {hint}")
