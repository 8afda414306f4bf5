"""Group-buy operator CLI -- Typer-based maintenance interface.

Provides commands for tenant provisioning and catalog seeding, running the
notification dispatcher, dead-letter handling, idempotency housekeeping
and schema management.  Human-readable output goes to *stderr* via Rich;
``--json`` writes machine-readable output to *stdout*.

Every command reads the same ``GROUPBUY_*`` environment as the API, so it
operates on the store the API is serving.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import typer
from groupbuy_core.errors import CoreError
from groupbuy_core.tenancy import ScopeToken, TenantContextResolver
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cli.display import display_dispatch_report, display_notifications, display_tenants

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="groupbuy",
    help="Group-buy platform operator CLI",
    no_args_is_help=True,
)
console = Console(stderr=True)

tenants_app = typer.Typer(name="tenants", help="Provision and list tenants.", no_args_is_help=True)
products_app = typer.Typer(name="products", help="Seed a tenant's catalog.", no_args_is_help=True)
dispatcher_app = typer.Typer(name="dispatcher", help="Run the notification dispatcher.", no_args_is_help=True)
notifications_app = typer.Typer(name="notifications", help="Inspect and requeue notifications.", no_args_is_help=True)
idempotency_app = typer.Typer(name="idempotency", help="Idempotency ledger housekeeping.", no_args_is_help=True)
db_app = typer.Typer(name="db", help="Schema management.", no_args_is_help=True)

app.add_typer(tenants_app, name="tenants")
app.add_typer(products_app, name="products")
app.add_typer(dispatcher_app, name="dispatcher")
app.add_typer(notifications_app, name="notifications")
app.add_typer(idempotency_app, name="idempotency")
app.add_typer(db_app, name="db")

from cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run_with_store(work: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Open the configured store, run *work*, and dispose the engine.

    Domain errors become a red message and exit code 3.
    """
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.state.database import get_engine, make_session_factory

    settings = load_core_settings()

    async def _main() -> T:
        engine = get_engine(settings.database_url, pool_size=2, max_overflow=0)
        try:
            return await work(make_session_factory(engine))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except CoreError as exc:
        console.print(f"[red]{exc.error_code}: {exc.message}[/red]")
        raise typer.Exit(code=3) from exc


async def _scope_for(session_factory: async_sessionmaker[AsyncSession], slug: str) -> ScopeToken:
    async with session_factory() as session:
        return await TenantContextResolver().resolve(session, slug)


def _parse_variant(raw: str) -> tuple[str, int | None]:
    """Parse ``NAME`` or ``NAME=PRICE``."""
    name, sep, price = raw.partition("=")
    if not name.strip():
        raise typer.BadParameter(f"Variant '{raw}' has no name")
    if not sep:
        return name.strip(), None
    try:
        return name.strip(), int(price)
    except ValueError as exc:
        raise typer.BadParameter(f"Variant '{raw}' has a non-integer price") from exc


# ---------------------------------------------------------------------------
# tenants
# ---------------------------------------------------------------------------


@tenants_app.command("create")
def tenants_create(
    slug: str = typer.Argument(..., help="Public tenant slug used in storefront and webhook URLs."),
    name: str = typer.Option(..., "--name", help="Display name."),
    host_id: str | None = typer.Option(None, "--host-id", help="LINE user id that receives host notifications."),
) -> None:
    """Provision a new tenant."""
    from groupbuy_core.state.provisioning import create_tenant

    scope = _run_with_store(lambda sf: create_tenant(sf, slug=slug, name=name, host_messaging_id=host_id))
    if _json_output:
        _emit_json({"tenant_id": scope.tenant_id, "slug": scope.tenant_slug})
    else:
        console.print(f"[green]Tenant '{scope.tenant_slug}' created[/green] (id {scope.tenant_id})")


@tenants_app.command("list")
def tenants_list() -> None:
    """List provisioned tenants."""
    from groupbuy_core.state.provisioning import list_tenants

    tenants = _run_with_store(list_tenants)
    if _json_output:
        _emit_json(
            [{"tenant_id": t.id, "slug": t.slug, "name": t.name, "host_messaging_id": t.host_messaging_id} for t in tenants]
        )
    else:
        display_tenants(console, tenants)


# ---------------------------------------------------------------------------
# products
# ---------------------------------------------------------------------------


@products_app.command("add")
def products_add(
    slug: str = typer.Argument(..., help="Tenant slug."),
    name: str = typer.Option(..., "--name", help="Product name."),
    price: int = typer.Option(..., "--price", help="Unit price in minor currency units."),
    variant: list[str] = typer.Option([], "--variant", help="Variant as NAME or NAME=PRICE; repeatable."),
    orderable_until: datetime | None = typer.Option(
        None,
        "--orderable-until",
        help="Last moment the product can be ordered (ISO 8601).",
        formats=["%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"],
    ),
    inactive: bool = typer.Option(False, "--inactive", help="Create the product switched off."),
) -> None:
    """Add a product (and optional variants) to a tenant's catalog."""
    from groupbuy_core.state.gateway import TenantDataGateway
    from groupbuy_core.state.provisioning import VariantSpec, add_product

    variants = [VariantSpec(name=n, price=p) for n, p in (_parse_variant(v) for v in variant)]

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> str:
        scope = await _scope_for(session_factory, slug)
        product = await add_product(
            TenantDataGateway(session_factory, scope),
            name=name,
            price=price,
            variants=variants,
            orderable_until=orderable_until,
            active=not inactive,
        )
        return product.id

    product_id = _run_with_store(_work)
    if _json_output:
        _emit_json({"product_id": product_id, "variants": len(variants)})
    else:
        console.print(f"[green]Product '{name}' added[/green] (id {product_id}, {len(variants)} variant(s))")


# ---------------------------------------------------------------------------
# dispatcher
# ---------------------------------------------------------------------------


@dispatcher_app.command("run")
def dispatcher_run(
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit."),
    worker_id: str | None = typer.Option(None, "--worker-id", help="Lease owner id (default: host:pid)."),
) -> None:
    """Deliver due notifications until interrupted, or once with ``--once``."""
    from api.config import load_api_settings
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.notifications.dispatcher import DispatchReport, NotificationDispatcher
    from groupbuy_core.notifications.provider import LineMessagingClient

    api_settings = load_api_settings()
    core_settings = load_core_settings()

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> tuple[DispatchReport | None, str]:
        provider = LineMessagingClient(base_url=api_settings.line_api_base_url, timeout=api_settings.line_api_timeout)
        dispatcher = NotificationDispatcher(session_factory, provider, core_settings, worker_id=worker_id)
        try:
            if once:
                return await dispatcher.run_once(), dispatcher.worker_id
            console.print(f"[green]Dispatcher running[/green] (worker {dispatcher.worker_id}); Ctrl+C to stop")
            dispatcher.start()
            try:
                await asyncio.Event().wait()
            finally:
                await dispatcher.stop()
            return None, dispatcher.worker_id
        finally:
            await provider.close()

    try:
        report, resolved_worker = _run_with_store(_work)
    except KeyboardInterrupt:
        console.print("[yellow]Dispatcher stopped.[/yellow]")
        return

    if report is None:
        return
    if _json_output:
        _emit_json(
            {
                "worker_id": resolved_worker,
                "claimed": report.claimed,
                "sent": report.sent,
                "retried": report.retried,
                "dead_lettered": report.dead_lettered,
                "lost_lease": report.lost_lease,
                "webhooks_replayed": report.webhooks_replayed,
                "webhooks_failed": report.webhooks_failed,
            }
        )
    else:
        display_dispatch_report(console, report, worker_id=resolved_worker)


# ---------------------------------------------------------------------------
# notifications
# ---------------------------------------------------------------------------


@notifications_app.command("dead-letters")
def notifications_dead_letters(
    slug: str = typer.Argument(..., help="Tenant slug."),
    limit: int = typer.Option(100, "--limit", min=1, max=1000),
) -> None:
    """List dead-lettered notifications of a tenant."""
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.notifications.queue import NotificationQueue

    async def _work(session_factory: async_sessionmaker[AsyncSession]):
        scope = await _scope_for(session_factory, slug)
        return await NotificationQueue(session_factory, load_core_settings()).list_dead_letters(scope, limit=limit)

    rows = _run_with_store(_work)
    if _json_output:
        _emit_json(
            [
                {
                    "id": r.id,
                    "order_id": r.order_id,
                    "target": r.target,
                    "trigger": r.trigger,
                    "attempts": r.attempts,
                    "last_error": r.last_error,
                    "dead_lettered_at": r.dead_lettered_at,
                }
                for r in rows
            ]
        )
    else:
        display_notifications(console, rows, title=f"Dead letters for {slug}")


@notifications_app.command("requeue")
def notifications_requeue(
    slug: str = typer.Argument(..., help="Tenant slug."),
    notification_id: str = typer.Argument(..., help="Dead-lettered notification id."),
) -> None:
    """Return a dead-lettered notification to the queue with a fresh retry budget."""
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.notifications.queue import NotificationQueue

    async def _work(session_factory: async_sessionmaker[AsyncSession]):
        scope = await _scope_for(session_factory, slug)
        return await NotificationQueue(session_factory, load_core_settings()).requeue(scope, notification_id)

    row = _run_with_store(_work)
    if _json_output:
        _emit_json({"id": row.id, "status": row.status, "attempts": row.attempts})
    else:
        console.print(f"[green]Notification {row.id} requeued[/green]")


# ---------------------------------------------------------------------------
# idempotency
# ---------------------------------------------------------------------------


@idempotency_app.command("purge")
def idempotency_purge(
    slug: str | None = typer.Argument(None, help="Tenant slug; all tenants when omitted."),
) -> None:
    """Delete idempotency records past their retention window."""
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.idempotency.ledger import IdempotencyLedger

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, int]:
        ledger = IdempotencyLedger(session_factory, load_core_settings())
        if slug is not None:
            scopes = [await _scope_for(session_factory, slug)]
        else:
            async with session_factory() as session:
                scopes = await TenantContextResolver().all_scopes(session)
        return {scope.tenant_slug: await ledger.purge_expired(scope) for scope in scopes}

    purged = _run_with_store(_work)
    if _json_output:
        _emit_json(purged)
    else:
        for tenant_slug, count in purged.items():
            console.print(f"{tenant_slug}: purged {count} record(s)")
        console.print(f"[green]Total purged: {sum(purged.values())}[/green]")


@idempotency_app.command("release")
def idempotency_release(
    slug: str = typer.Argument(..., help="Tenant slug."),
    key: str = typer.Argument(..., help="Idempotency key to release."),
    force: bool = typer.Option(False, "--force", help="Release even if the slot is younger than the stale timeout."),
) -> None:
    """Release an InProgress idempotency slot left behind by a crashed request."""
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.idempotency.ledger import IdempotencyLedger

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> bool:
        scope = await _scope_for(session_factory, slug)
        return await IdempotencyLedger(session_factory, load_core_settings()).force_release(
            scope, key, ignore_age=force
        )

    released = _run_with_store(_work)
    if _json_output:
        _emit_json({"key": key, "released": released})
    elif released:
        console.print(f"[green]Released '{key}'[/green]")
    else:
        console.print(f"[yellow]'{key}' was not released (completed, or not stale yet; use --force)[/yellow]")
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------


@db_app.command("init")
def db_init() -> None:
    """Create all tables directly (local SQLite / development)."""
    from groupbuy_core.config import load_core_settings
    from groupbuy_core.state.database import get_engine
    from groupbuy_core.state.sqlite_adapter import create_local_tables

    async def _main() -> None:
        engine = get_engine(load_core_settings().database_url, pool_size=1, max_overflow=0)
        try:
            await create_local_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_main())
    console.print("[green]Tables created.[/green]")


@db_app.command("upgrade")
def db_upgrade(
    revision: str = typer.Argument("head", help="Target revision."),
) -> None:
    """Apply Alembic migrations up to *revision*."""
    from alembic import command
    from alembic.config import Config

    import groupbuy_core.state
    from groupbuy_core.config import load_core_settings

    config = Config()
    config.set_main_option("sqlalchemy.url", load_core_settings().database_url)
    config.set_main_option("script_location", str(Path(groupbuy_core.state.__file__).parent / "migrations"))
    command.upgrade(config, revision)
    console.print(f"[green]Database upgraded to {revision}.[/green]")
