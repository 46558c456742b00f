"""Ledger CLI application -- Typer-based operator interface.

Provides commands for schema setup, balance inspection, manual support
grants, and the subscription expiry sweep.  Human-readable output goes to
*stderr* via Rich; ``--json`` writes machine-readable results to *stdout*
so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import typer
from ledger_engine.config import Settings, load_settings
from ledger_engine.errors import StoreUnavailableError
from ledger_engine.state.database import get_engine, get_session_factory
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from cli.display import display_balance, display_expired, display_purchases

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="ledger",
    help="Credit ledger - balances, grants and subscription maintenance",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Ledger store URL (defaults to LEDGER_DATABASE_URL).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log ledger internals to stderr."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, stream=sys.stderr)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> Settings:
    if _database_url:
        return load_settings(database_url=_database_url)
    return load_settings()


def _with_store(work: Callable[[AsyncEngine, Settings], Awaitable[T]]) -> T:
    """Run *work* against a freshly opened store and dispose the engine afterwards.

    Store failures are reported on stderr and end the command with exit
    code 3.
    """
    settings = _settings()

    async def _run() -> T:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            return await work(engine, settings)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except (StoreUnavailableError, SQLAlchemyError) as exc:
        console.print(f"[red]Ledger store unavailable: {type(exc).__name__}[/red]")
        raise typer.Exit(code=3) from exc


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, sort_keys=True, default=str) + "\n")


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the ledger tables if they do not exist.

    Production deployments run the Alembic migrations instead.
    """
    from ledger_engine.state.tables import Base

    async def _work(engine: AsyncEngine, settings: Settings) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    _with_store(_work)
    if _json_output:
        _emit_json({"status": "ok"})
    else:
        console.print("[green]Ledger tables ready.[/green]")


# ---------------------------------------------------------------------------
# balance
# ---------------------------------------------------------------------------


@app.command()
def balance(owner_id: str = typer.Argument(..., help="Owner id to inspect.")) -> None:
    """Show the owner's spendable balance (completed, unexpired purchases)."""
    from ledger_engine.ledger.engine import LedgerEngine

    async def _work(engine: AsyncEngine, settings: Settings) -> int:
        return await LedgerEngine(get_session_factory(engine)).available_balance(owner_id)

    available = _with_store(_work)
    if _json_output:
        _emit_json({"owner_id": owner_id, "available_credits": available})
    else:
        display_balance(console, owner_id, available)


# ---------------------------------------------------------------------------
# purchases
# ---------------------------------------------------------------------------


@app.command()
def purchases(
    owner_id: str = typer.Argument(..., help="Owner id to inspect."),
    limit: int = typer.Option(20, "--limit", min=1, help="Maximum number of purchases to list."),
) -> None:
    """List the owner's purchases, newest first."""
    from ledger_engine.state.repository import PurchaseRepository

    async def _work(engine: AsyncEngine, settings: Settings) -> list[Any]:
        async with get_session_factory(engine)() as session:
            return await PurchaseRepository(session).list_for_owner(owner_id, limit=limit)

    rows = _with_store(_work)
    if _json_output:
        _emit_json(
            [
                {
                    "id": row.id,
                    "source": row.source,
                    "status": row.status,
                    "credits_granted": row.credits_granted,
                    "credits_remaining": row.credits_remaining,
                    "subscription_id": row.subscription_id,
                    "created_at": row.created_at.isoformat(),
                    "expires_at": row.expires_at.isoformat() if row.expires_at else None,
                }
                for row in rows
            ]
        )
    else:
        display_purchases(console, owner_id, rows, datetime.now(UTC))


# ---------------------------------------------------------------------------
# grant
# ---------------------------------------------------------------------------


@app.command()
def grant(
    owner_id: str = typer.Argument(..., help="Owner id to credit."),
    credits: int = typer.Argument(..., min=1, help="Number of credits to grant."),
    days: int = typer.Option(30, "--days", min=1, help="Validity in days from now."),
    no_expiry: bool = typer.Option(False, "--no-expiry", help="Grant credits that never expire."),
) -> None:
    """Grant a completed top-up purchase by hand (support adjustments)."""
    from ledger_engine.models.ledger import PurchaseSource
    from ledger_engine.state.repository import AccountRepository, PurchaseRepository

    expires_at = None if no_expiry else datetime.now(UTC) + timedelta(days=days)

    async def _work(engine: AsyncEngine, settings: Settings) -> str:
        async with get_session_factory(engine)() as session, session.begin():
            await AccountRepository(session).ensure(owner_id)
            purchase = await PurchaseRepository(session).create(
                owner_id,
                credits,
                PurchaseSource.TOPUP,
                expires_at=expires_at,
            )
            return purchase.id

    purchase_id = _with_store(_work)
    if _json_output:
        _emit_json(
            {
                "purchase_id": purchase_id,
                "owner_id": owner_id,
                "credits": credits,
                "expires_at": expires_at.isoformat() if expires_at else None,
            }
        )
    else:
        expiry = expires_at.strftime("%Y-%m-%d %H:%M UTC") if expires_at else "never"
        console.print(f"[green]Granted {credits} credit(s) to {owner_id}[/green] (purchase {purchase_id}, expires {expiry})")


# ---------------------------------------------------------------------------
# expire-subscriptions
# ---------------------------------------------------------------------------


@app.command("expire-subscriptions")
def expire_subscriptions() -> None:
    """Mark active subscriptions whose period has ended as expired.

    Safe to run repeatedly (e.g. from cron); already-expired subscriptions
    are skipped.  Credits already granted stay usable until they expire.
    """
    from ledger_engine.subscriptions.state_machine import SubscriptionStateMachine

    async def _work(engine: AsyncEngine, settings: Settings) -> list[str]:
        machine = SubscriptionStateMachine(
            get_session_factory(engine),
            credits_per_period=settings.pro_credits_per_period,
            validity_days=settings.pro_validity_days,
            topup_credits=settings.topup_credits,
            expiry_grace=timedelta(hours=settings.expiry_grace_hours),
        )
        return await machine.expire_lapsed()

    expired = _with_store(_work)
    if _json_output:
        _emit_json({"expired": expired})
    else:
        display_expired(console, expired)
