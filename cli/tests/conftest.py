"""Shared fixtures for CLI tests.

Each test points ``GROUPBUY_DATABASE_URL`` at a fresh SQLite file and runs
from its own temporary directory so no ``.env`` file is picked up.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from groupbuy_core.models.order import NotificationStatus
from groupbuy_core.state.database import get_engine, make_session_factory
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.tables import NotificationEventTable
from groupbuy_core.tenancy import TenantContextResolver
from typer.testing import CliRunner


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def database_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GROUPBUY_DATABASE_URL", url)
    monkeypatch.setenv("GROUPBUY_DISPATCHER_JITTER", "false")
    return url


@pytest.fixture
def seed_dead_letter(database_url):
    """Return a callable that inserts one dead-lettered notification for a tenant slug."""

    def _seed(slug: str) -> str:
        async def _insert() -> str:
            engine = get_engine(database_url)
            try:
                session_factory = make_session_factory(engine)
                async with session_factory() as session:
                    scope = await TenantContextResolver().resolve(session, slug)
                async with TenantDataGateway(session_factory, scope).unit() as unit:
                    event = await unit.add(
                        NotificationEventTable(
                            target="host",
                            trigger="order_created",
                            payload={"text": "New order"},
                            status=NotificationStatus.DEAD_LETTERED.value,
                            attempts=3,
                            last_error="provider returned 500",
                            dead_lettered_at=datetime.now(UTC),
                        )
                    )
                return event.id
            finally:
                await engine.dispose()

        return asyncio.run(_insert())

    return _seed
