"""Rich output formatting for the group-buy operator CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that ``--json`` output on *stdout* is never polluted
with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from groupbuy_core.notifications.dispatcher import DispatchReport
    from groupbuy_core.state.tables import NotificationEventTable, TenantTable


_STATUS_COLOURS: dict[str, str] = {
    "Sent": "green",
    "Pending": "yellow",
    "Failed": "red",
    "DeadLettered": "bold red",
}


def _coloured_status(status: str) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def display_tenants(console: Console, tenants: list[TenantTable]) -> None:
    if not tenants:
        console.print("[dim]No tenants provisioned.[/dim]")
        return

    table = Table(title=f"Tenants ({len(tenants)})", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Slug", style="bold")
    table.add_column("Name")
    table.add_column("Host messaging id")
    table.add_column("Id", style="dim")
    for tenant in tenants:
        table.add_row(tenant.slug, tenant.name, tenant.host_messaging_id or "-", tenant.id)
    console.print(table)


def display_notifications(console: Console, rows: list[NotificationEventTable], *, title: str) -> None:
    """Render queued notifications, newest dead letters first.

    Parameters
    ----------
    console:
        Rich console to write to.
    rows:
        Notification rows as returned by the queue.
    title:
        Table title.
    """
    if not rows:
        console.print("[dim]No notifications.[/dim]")
        return

    table = Table(title=f"{title} ({len(rows)})", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Id", style="bold")
    table.add_column("Target")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    for row in rows:
        table.add_row(
            row.id,
            row.target,
            row.trigger,
            _coloured_status(row.status),
            str(row.attempts),
            (row.last_error or "-")[:60],
        )
    console.print(table)


def display_dispatch_report(console: Console, report: DispatchReport, *, worker_id: str) -> None:
    lines = [
        f"[bold]Worker:[/bold]        {worker_id}",
        f"[bold]Claimed:[/bold]       {report.claimed}",
        f"[bold]Sent:[/bold]          [green]{report.sent}[/green]",
        f"[bold]Retried:[/bold]       [yellow]{report.retried}[/yellow]",
        f"[bold]Dead-lettered:[/bold] [red]{report.dead_lettered}[/red]",
        f"[bold]Lost lease:[/bold]    {report.lost_lease}",
        f"[bold]Webhooks:[/bold]      {report.webhooks_replayed} replayed, {report.webhooks_failed} failed",
    ]
    console.print(Panel("\n".join(lines), title="Dispatcher pass", border_style="blue"))
