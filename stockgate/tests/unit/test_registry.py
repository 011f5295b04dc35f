from __future__ import annotations

import asyncio

import pytest

from stockgate.core.errors import ModelSchemaConflict, TenantConnectionFailed
from stockgate.domain.schemas import CATEGORY, PRODUCT
from stockgate.persistence.registry import EntryState
from stockgate.services.telemetry import counters_snapshot
from stockgate.tests.utils.tenants import Clock, FakeConnector, build_registry


@pytest.mark.asyncio
async def test_concurrent_first_use_opens_one_connection() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    registry = build_registry(connector)

    waiters = [
        asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT)) for _ in range(25)
    ]
    await asyncio.sleep(0)
    assert registry.entry("tenant_a").state is EntryState.CONNECTING
    connector.gate.set()
    models = await asyncio.gather(*waiters)

    assert connector.calls == ["tenant_a"]
    assert all(model is models[0] for model in models)
    assert registry.entry("tenant_a").state is EntryState.READY
    await registry.aclose()


@pytest.mark.asyncio
async def test_same_model_name_returns_cached_instance() -> None:
    compiled: list[str] = []
    connector = FakeConnector()
    registry = build_registry(connector)
    original = registry._compiler

    def counting_compiler(handle, metadata, model_name, schema):
        compiled.append(model_name)
        return original(handle, metadata, model_name, schema)

    registry._compiler = counting_compiler
    first = await registry.acquire_model("tenant_a", "Category", CATEGORY)
    second = await registry.acquire_model("tenant_a", "Category", CATEGORY)

    assert first is second
    assert compiled == ["Category"]
    assert "Category" in registry.entry("tenant_a").models
    assert first.table.name == "categories"
    await registry.aclose()


@pytest.mark.asyncio
async def test_models_are_isolated_per_tenant() -> None:
    registry = build_registry(FakeConnector())
    model_a = await registry.acquire_model("tenant_a", "Product", PRODUCT)
    model_b = await registry.acquire_model("tenant_b", "Product", PRODUCT)

    assert model_a is not model_b
    assert model_a.engine.database_name == "tenant_a"
    assert model_b.engine.database_name == "tenant_b"
    await registry.aclose()


@pytest.mark.asyncio
async def test_conflicting_schema_for_registered_name_is_rejected() -> None:
    registry = build_registry(FakeConnector())
    await registry.acquire_model("tenant_a", "Product", PRODUCT)

    with pytest.raises(ModelSchemaConflict):
        await registry.acquire_model("tenant_a", "Product", CATEGORY)
    await registry.aclose()


@pytest.mark.asyncio
async def test_idle_entry_is_evicted_and_transparently_reconnected() -> None:
    clock = Clock()
    connector = FakeConnector()
    registry = build_registry(connector, clock=clock, idle_timeout_s=60.0)

    first = await registry.acquire_model("tenant_a", "Product", PRODUCT)
    clock.advance(61)
    evicted = await registry.sweep()

    assert evicted == ["tenant_a"]
    assert "tenant_a" not in registry
    assert connector.closed == ["tenant_a"]
    assert counters_snapshot()["tenant_connections_evicted_total"] == 1

    second = await registry.acquire_model("tenant_a", "Product", PRODUCT)
    assert second is not first
    assert connector.calls == ["tenant_a", "tenant_a"]
    await registry.aclose()


@pytest.mark.asyncio
async def test_recently_used_entry_survives_sweep() -> None:
    clock = Clock()
    registry = build_registry(FakeConnector(), clock=clock, idle_timeout_s=60.0)
    await registry.acquire_model("tenant_a", "Product", PRODUCT)
    clock.advance(30)

    assert await registry.sweep() == []
    assert "tenant_a" in registry
    await registry.aclose()


@pytest.mark.asyncio
async def test_leased_entry_is_never_evicted() -> None:
    clock = Clock()
    connector = FakeConnector()
    registry = build_registry(connector, clock=clock, idle_timeout_s=60.0)

    async with registry.lease("tenant_a") as entry:
        registry.model_for(entry, "Product", PRODUCT)
        clock.advance(600)
        assert await registry.sweep() == []
        assert entry.refs == 1
        assert connector.closed == []

    clock.advance(61)
    assert await registry.sweep() == ["tenant_a"]
    await registry.aclose()


@pytest.mark.asyncio
async def test_failed_connect_is_not_cached() -> None:
    connector = FakeConnector(fail_times=1)
    registry = build_registry(connector)

    with pytest.raises(TenantConnectionFailed) as excinfo:
        await registry.acquire_model("tenant_a", "Product", PRODUCT)
    assert excinfo.value.details == {"reason": "unreachable"}
    assert "tenant_a" not in registry

    model = await registry.acquire_model("tenant_a", "Product", PRODUCT)
    assert model.name == "Product"
    assert connector.calls == ["tenant_a", "tenant_a"]
    assert counters_snapshot()["tenant_connect_failures_total"] == 1
    await registry.aclose()


@pytest.mark.asyncio
async def test_failure_reaches_every_waiter_and_spares_other_tenants() -> None:
    connector = FakeConnector(fail_times=1)
    connector.gate = asyncio.Event()
    registry = build_registry(connector)

    waiters = [
        asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT)) for _ in range(5)
    ]
    await asyncio.sleep(0)
    connector.gate.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert all(isinstance(result, TenantConnectionFailed) for result in results)
    assert connector.calls == ["tenant_a"]

    model = await registry.acquire_model("tenant_b", "Product", PRODUCT)
    assert model.engine.database_name == "tenant_b"
    await registry.aclose()


@pytest.mark.asyncio
async def test_connect_timeout_is_reported_separately() -> None:
    connector = FakeConnector(delay_s=5.0)
    registry = build_registry(connector, connect_timeout_s=0.05)

    with pytest.raises(TenantConnectionFailed) as excinfo:
        await registry.acquire_model("tenant_a", "Product", PRODUCT)
    assert excinfo.value.details == {"reason": "timeout"}
    assert "tenant_a" not in registry
    await registry.aclose()


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_connect() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    registry = build_registry(connector)

    impatient = asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT))
    patient = asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT))
    await asyncio.sleep(0)
    impatient.cancel()
    await asyncio.sleep(0)
    connector.gate.set()

    model = await patient
    assert model.name == "Product"
    assert impatient.cancelled()
    assert registry.entry("tenant_a").refs == 0
    await registry.aclose()


@pytest.mark.asyncio
async def test_stats_and_health_check() -> None:
    connector = FakeConnector()
    registry = build_registry(connector)
    await registry.acquire_model("tenant_a", "Product", PRODUCT)
    await registry.acquire_model("tenant_a", "Category", CATEGORY)
    await registry.acquire_model("tenant_b", "Product", PRODUCT)

    stats = registry.stats()
    assert stats["total"] == 2
    assert stats["ready"] == 2
    by_name = {item["databaseName"]: item for item in stats["connections"]}
    assert by_name["tenant_a"]["models"] == 2
    assert by_name["tenant_b"]["refs"] == 0

    report = await registry.health_check()
    assert report["healthy"] is True
    assert sorted(connector.pings) == ["tenant_a", "tenant_b"]

    connector.ping_error = ConnectionResetError("gone")
    report = await registry.health_check()
    assert report["healthy"] is False
    assert {item["status"] for item in report["connections"]} == {"unhealthy"}
    await registry.aclose()


@pytest.mark.asyncio
async def test_close_and_shutdown_release_connections() -> None:
    connector = FakeConnector()
    registry = build_registry(connector)
    await registry.acquire_model("tenant_a", "Product", PRODUCT)
    await registry.acquire_model("tenant_b", "Product", PRODUCT)

    assert await registry.close("tenant_a") is True
    assert await registry.close("tenant_a") is False
    assert connector.closed == ["tenant_a"]

    await registry.aclose()
    assert sorted(connector.closed) == ["tenant_a", "tenant_b"]
    assert len(registry) == 0
    with pytest.raises(TenantConnectionFailed):
        await registry.acquire_model("tenant_c", "Product", PRODUCT)


@pytest.mark.asyncio
async def test_close_while_connecting_closes_the_late_handle() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    registry = build_registry(connector)

    waiter = asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert connector.calls == ["tenant_a"]
    closing = asyncio.create_task(registry.close("tenant_a"))
    await asyncio.sleep(0)
    connector.gate.set()

    assert await closing is True
    with pytest.raises(TenantConnectionFailed) as excinfo:
        await waiter
    assert excinfo.value.details == {"reason": "closed"}
    assert connector.closed == ["tenant_a"]
    assert registry.entry("tenant_a") is None
    await registry.aclose()


@pytest.mark.asyncio
async def test_close_before_connect_starts_still_releases_handle() -> None:
    connector = FakeConnector()
    registry = build_registry(connector)

    waiter = asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT))
    await asyncio.sleep(0)
    assert registry.entry("tenant_a").state is EntryState.CONNECTING
    assert connector.calls == []

    assert await registry.close("tenant_a") is True
    with pytest.raises(TenantConnectionFailed) as excinfo:
        await waiter
    assert excinfo.value.details == {"reason": "closed"}
    assert connector.calls == ["tenant_a"]
    assert connector.closed == ["tenant_a"]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_shutdown_during_connect_leaves_no_open_handle() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    registry = build_registry(connector)

    waiters = [
        asyncio.create_task(registry.acquire_model("tenant_a", "Product", PRODUCT)) for _ in range(3)
    ]
    await asyncio.sleep(0)
    shutdown = asyncio.create_task(registry.aclose())
    await asyncio.sleep(0)
    connector.gate.set()
    await shutdown

    results = await asyncio.gather(*waiters, return_exceptions=True)
    assert all(isinstance(result, TenantConnectionFailed) for result in results)
    assert connector.closed == ["tenant_a"]
    assert len(registry) == 0

    # A fresh attempt after the abandoned one starts over instead of reusing it.
    reopened = build_registry(connector)
    model = await reopened.acquire_model("tenant_a", "Product", PRODUCT)
    assert model.name == "Product"
    await reopened.aclose()
