from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from stockgate.core.config import get_settings


logger = logging.getLogger(__name__)

# Database names come from the authority but still end up inside a connection URL.
_DATABASE_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]{0,62}$")


def validate_database_name(database_name: str) -> str:
    if not isinstance(database_name, str) or not _DATABASE_NAME_RE.match(database_name):
        raise ValueError("Invalid tenant database name")
    return database_name


def build_tenant_url(base_url: str, database_name: str) -> str:
    # Swap only the database component so credentials and driver stay shared across tenants.
    url = make_url(base_url).set(database=validate_database_name(database_name))
    return url.render_as_string(hide_password=False)


def _engine_kwargs(url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Bounded per-tenant pools keep total connections predictable as tenants grow.
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = max(1, int(settings.tenant_db_pool_size))
        kwargs["max_overflow"] = max(0, int(settings.tenant_db_max_overflow))
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
    return kwargs


async def connect_tenant_engine(database_name: str) -> AsyncEngine:
    # Open the engine and prove it works before any model is compiled against it.
    settings = get_settings()
    url = build_tenant_url(settings.tenant_database_url, database_name)
    engine = create_async_engine(url, **_engine_kwargs(url))
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except BaseException:
        await engine.dispose()
        raise
    logger.info("tenant_engine_connected db=%s", database_name)
    return engine


async def close_tenant_engine(engine: AsyncEngine) -> None:
    await engine.dispose()


async def ping_tenant_engine(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
