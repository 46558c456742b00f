"""Rich output formatting for the ledger CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from ledger_engine.state.tables import PurchaseTable


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "completed": "green",
    "pending": "yellow",
    "failed": "red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _format_expiry(expires_at: datetime | None, now: datetime) -> str:
    if expires_at is None:
        return "[dim]never[/dim]"
    stamp = expires_at.strftime("%Y-%m-%d %H:%M")
    if expires_at <= now:
        return f"[dim red]{stamp} (expired)[/dim red]"
    return stamp


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


def display_balance(console: Console, owner_id: str, available: int) -> None:
    """Render the owner's spendable balance in a panel."""
    colour = "green" if available > 0 else "red"
    console.print(
        Panel(
            f"[bold]Owner:[/bold]     {owner_id}\n[bold]Available:[/bold] [{colour}]{available}[/{colour}] credits",
            title="Credit Balance",
            border_style="blue",
        )
    )


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def display_purchases(console: Console, owner_id: str, purchases: Sequence[PurchaseTable], now: datetime) -> None:
    """Render an owner's purchases, newest first.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    owner_id:
        Owner the purchases belong to; used in the title.
    purchases:
        Purchase rows as returned by the repository.
    now:
        Reference time for marking expired purchases.
    """
    if not purchases:
        console.print(f"[dim]No purchases for {owner_id}.[/dim]")
        return

    table = Table(title=f"Purchases for {owner_id}", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Remaining", justify="right")
    table.add_column("Granted", justify="right")
    table.add_column("Created")
    table.add_column("Expires")

    for purchase in purchases:
        table.add_row(
            purchase.id,
            purchase.source,
            _coloured_status(purchase.status),
            str(purchase.credits_remaining),
            str(purchase.credits_granted),
            purchase.created_at.strftime("%Y-%m-%d %H:%M"),
            _format_expiry(purchase.expires_at, now),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------


def display_expired(console: Console, subscription_ids: Sequence[str]) -> None:
    """Summarise the subscriptions moved to ``expired`` by a sweep."""
    if not subscription_ids:
        console.print("[dim]No lapsed subscriptions.[/dim]")
        return
    console.print(f"[yellow]Expired {len(subscription_ids)} subscription(s):[/yellow]")
    for sub_id in subscription_ids:
        console.print(f"  - {sub_id}")
