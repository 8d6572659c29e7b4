"""Token store maintenance commands."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import click

from device_service.cli.utils import coro, error, header, info, success
from device_service.core.exceptions import StoreFailure
from device_service.core.settings import get_auth_settings, get_db_settings
from device_service.features.auth.service import TokenLedger
from device_service.infra.database import (
    close_database,
    create_engine_from_settings,
    create_session_factory,
    init_database,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@asynccontextmanager
async def _ledger() -> AsyncIterator[TokenLedger]:
    engine = create_engine_from_settings(get_db_settings())
    try:
        yield TokenLedger(create_session_factory(engine), get_auth_settings())
    finally:
        await close_database(engine)


@click.command(name="sweep-tokens")
@coro
async def sweep_tokens() -> None:
    """Delete expired blacklist entries and refresh tokens once."""
    async with _ledger() as ledger:
        try:
            removed = await ledger.sweep_expired()
        except StoreFailure as e:
            error(f"Sweep failed: {e.detail}")
            raise SystemExit(1) from e
    success(f"Removed {removed} expired token row(s)")


@click.command(name="token-stats")
@coro
async def token_stats() -> None:
    """Print blacklist and refresh token counts."""
    async with _ledger() as ledger:
        try:
            stats = await ledger.token_stats()
        except StoreFailure as e:
            error(f"Could not read token store: {e.detail}")
            raise SystemExit(1) from e
    header("Token store")
    info(f"Blacklisted tokens:     {stats.blacklisted_tokens}")
    info(f"Active refresh tokens:  {stats.active_refresh_tokens}")


@click.command(name="init-db")
@coro
async def init_db() -> None:
    """Create the token store tables."""
    db = get_db_settings()
    engine = create_engine_from_settings(db)
    try:
        await init_database(engine, create_tables=True)
    finally:
        await close_database(engine)
    success(f"Token store tables ready ({engine.dialect.name})")
