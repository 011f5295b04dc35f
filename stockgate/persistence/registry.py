from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Awaitable, Callable

from stockgate.core.config import get_settings
from stockgate.core.errors import InternalError, TenantConnectionFailed
from stockgate.persistence.models import ModelCache, ModelCompiler, ModelSchema, TenantModel, compile_model
from stockgate.persistence.tenant_db import close_tenant_engine, connect_tenant_engine, ping_tenant_engine
from stockgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
Closer = Callable[[Any], Awaitable[None]]
Pinger = Callable[[Any], Awaitable[None]]


class EntryState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


@dataclass(eq=False)
class ConnectionEntry:
    # One per tenant database; shared by every concurrent request for that tenant.
    database_name: str
    models: ModelCache
    last_accessed_at: float
    state: EntryState = EntryState.CONNECTING
    handle: Any = None
    refs: int = 0
    connecting: asyncio.Task | None = field(default=None, repr=False)


def _consume_task_exception(task: asyncio.Task) -> None:
    # Waiters may all have gone away; keep asyncio from reporting an unretrieved exception.
    if not task.cancelled():
        task.exception()


class ConnectionRegistry:
    """Owns one connection and one model cache per tenant database.

    Lookup and insertion of a pending entry happen without an intervening
    ``await``, so on a single event loop concurrent callers for an unseen
    database always share one in-flight connect. The registry is not safe to
    share across threads or event loops.
    """

    def __init__(
        self,
        *,
        connector: Connector = connect_tenant_engine,
        closer: Closer = close_tenant_engine,
        pinger: Pinger = ping_tenant_engine,
        compiler: ModelCompiler = compile_model,
        connect_timeout_s: float | None = None,
        idle_timeout_s: float | None = None,
        sweep_interval_s: float | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._connector = connector
        self._closer = closer
        self._pinger = pinger
        self._compiler = compiler
        self._connect_timeout_s = (
            connect_timeout_s if connect_timeout_s is not None else settings.tenant_connect_timeout_ms / 1000.0
        )
        self._idle_timeout_s = idle_timeout_s if idle_timeout_s is not None else float(settings.tenant_idle_timeout_s)
        self._sweep_interval_s = (
            sweep_interval_s if sweep_interval_s is not None else float(settings.tenant_sweep_interval_s)
        )
        # Monotonic time keeps idle math immune to wall-clock jumps.
        self._time_provider = time_provider or time.monotonic
        self._entries: dict[str, ConnectionEntry] = {}
        self._sweeper: asyncio.Task | None = None
        self._closed = False

    def __contains__(self, database_name: object) -> bool:
        return database_name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, database_name: str) -> ConnectionEntry | None:
        return self._entries.get(database_name)

    def _get_or_create_entry(self, database_name: str) -> ConnectionEntry:
        entry = self._entries.get(database_name)
        if entry is not None:
            return entry
        entry = ConnectionEntry(
            database_name=database_name,
            models=ModelCache(self._compiler),
            last_accessed_at=self._time_provider(),
        )
        task = asyncio.get_running_loop().create_task(self._connect(entry))
        task.add_done_callback(_consume_task_exception)
        entry.connecting = task
        self._entries[database_name] = entry
        return entry

    def _discard(self, entry: ConnectionEntry) -> None:
        # Only remove the exact entry; a fresh attempt may already occupy the key.
        if self._entries.get(entry.database_name) is entry:
            del self._entries[entry.database_name]

    async def _connect(self, entry: ConnectionEntry) -> None:
        reason = "unreachable"
        try:
            handle = await asyncio.wait_for(
                self._connector(entry.database_name), timeout=self._connect_timeout_s
            )
        except asyncio.TimeoutError:
            reason = "timeout"
            logger.warning("tenant_connect_timeout db=%s", entry.database_name)
        except asyncio.CancelledError:
            reason = "closed"
            logger.info("tenant_connect_cancelled db=%s", entry.database_name)
        except ValueError:
            reason = "invalid_database"
            logger.warning("tenant_connect_rejected db=%r", entry.database_name)
        except Exception as exc:  # noqa: BLE001 - any driver failure is a failed connect
            logger.warning(
                "tenant_connect_failed db=%s error=%s", entry.database_name, type(exc).__name__
            )
        else:
            if self._entries.get(entry.database_name) is not entry:
                # Closed while connecting: nobody can reach this handle any more.
                entry.handle = handle
                await self._close_handle(entry)
                entry.state = EntryState.FAILED
                logger.info("tenant_connect_abandoned db=%s", entry.database_name)
                raise TenantConnectionFailed(details={"reason": "closed"})
            entry.handle = handle
            entry.state = EntryState.READY
            entry.last_accessed_at = self._time_provider()
            increment_counter("tenant_connections_opened_total")
            logger.info("tenant_connection_ready db=%s", entry.database_name)
            return

        # No negative caching: the entry disappears so the next request starts over.
        entry.state = EntryState.FAILED
        self._discard(entry)
        increment_counter("tenant_connect_failures_total")
        raise TenantConnectionFailed(details={"reason": reason})

    @asynccontextmanager
    async def lease(self, database_name: str) -> AsyncIterator[ConnectionEntry]:
        # Hold a reference for the caller's lifetime so the sweeper never closes a busy tenant.
        if self._closed:
            raise TenantConnectionFailed(details={"reason": "closed"})
        entry = self._get_or_create_entry(database_name)
        entry.refs += 1
        try:
            if entry.state is not EntryState.READY and entry.connecting is not None:
                # Shielded so a disconnecting caller never cancels a connect other requests await.
                await asyncio.shield(entry.connecting)
            entry.last_accessed_at = self._time_provider()
            yield entry
        finally:
            entry.refs -= 1
            if entry.state is EntryState.READY:
                entry.last_accessed_at = self._time_provider()

    def model_for(self, entry: ConnectionEntry, model_name: str, schema: ModelSchema) -> TenantModel:
        if entry.state is not EntryState.READY:
            raise InternalError()
        model = entry.models.get_or_compile(entry.handle, model_name, schema)
        entry.last_accessed_at = self._time_provider()
        return model

    async def acquire_model(self, database_name: str, model_name: str, schema: ModelSchema) -> TenantModel:
        async with self.lease(database_name) as entry:
            return self.model_for(entry, model_name, schema)

    async def sweep(self) -> list[str]:
        # Select and detach idle entries before the first await so no lease can slip in between.
        now = self._time_provider()
        idle = [
            entry
            for entry in self._entries.values()
            if entry.state is EntryState.READY
            and entry.refs == 0
            and now - entry.last_accessed_at > self._idle_timeout_s
        ]
        for entry in idle:
            del self._entries[entry.database_name]
        for entry in idle:
            await self._close_handle(entry)
            increment_counter("tenant_connections_evicted_total")
            logger.info("tenant_connection_evicted db=%s", entry.database_name)
        return [entry.database_name for entry in idle]

    async def _close_handle(self, entry: ConnectionEntry) -> None:
        handle, entry.handle = entry.handle, None
        if handle is None:
            return
        try:
            await self._closer(handle)
        except Exception as exc:  # noqa: BLE001 - a failing close must not stop the sweep or shutdown
            logger.warning("tenant_close_failed db=%s error=%s", entry.database_name, type(exc).__name__)

    async def close(self, database_name: str) -> bool:
        entry = self._entries.pop(database_name, None)
        if entry is None:
            return False
        if entry.connecting is not None and not entry.connecting.done():
            # Let the in-flight connect finish; it sees the entry detached and closes its own handle.
            try:
                await asyncio.shield(entry.connecting)
            except TenantConnectionFailed as exc:
                logger.debug("tenant_close_during_connect db=%s reason=%s", database_name, exc.details)
            logger.info("tenant_connection_closed db=%s", database_name)
            return True
        if entry.refs:
            logger.warning("tenant_closed_with_leases db=%s refs=%s", database_name, entry.refs)
        await self._close_handle(entry)
        logger.info("tenant_connection_closed db=%s", database_name)
        return True

    async def close_all(self) -> None:
        for database_name in list(self._entries):
            await self.close(database_name)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001 - keep sweeping on the next tick
                logger.exception("tenant_sweep_failed")

    async def aclose(self) -> None:
        # Explicit teardown: stop the sweeper, then close every tenant connection.
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.close_all()

    def stats(self) -> dict[str, Any]:
        now = self._time_provider()
        connections = [
            {
                "databaseName": entry.database_name,
                "state": entry.state.value,
                "models": len(entry.models),
                "refs": entry.refs,
                "idleSeconds": round(max(0.0, now - entry.last_accessed_at), 3),
            }
            for entry in self._entries.values()
        ]
        return {
            "total": len(connections),
            "ready": sum(1 for item in connections if item["state"] == EntryState.READY.value),
            "connecting": sum(1 for item in connections if item["state"] == EntryState.CONNECTING.value),
            "connections": connections,
        }

    async def health_check(self) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        healthy = True
        for entry in list(self._entries.values()):
            if entry.state is not EntryState.READY:
                continue
            try:
                await asyncio.wait_for(self._pinger(entry.handle), timeout=self._connect_timeout_s)
                status = "healthy"
            except Exception as exc:  # noqa: BLE001 - report, do not raise, on ping failures
                healthy = False
                status = "unhealthy"
                logger.warning("tenant_ping_failed db=%s error=%s", entry.database_name, type(exc).__name__)
            results.append({"databaseName": entry.database_name, "status": status})
        return {"healthy": healthy, "connections": results}
