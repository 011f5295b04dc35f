from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from sqlalchemy import MetaData
from sqlalchemy.exc import InvalidRequestError

from stockgate.domain.schemas import MODEL_SCHEMAS, PRODUCT
from stockgate.persistence.models import compile_model


class _Result:
    def __init__(self, rows: list[dict]) -> None:
        self._rows = rows

    def mappings(self) -> "_Result":
        return self

    def all(self) -> list[dict]:
        return self._rows

    def scalar_one(self) -> int:
        return len(self._rows)


class _Conn:
    def __init__(self, engine: "_RecordingEngine") -> None:
        self._engine = engine

    async def execute(self, stmt):
        self._engine.statements.append(str(stmt))
        return _Result(self._engine.rows)


class _RecordingEngine:
    # Stands in for an AsyncEngine; records compiled SQL instead of running it.
    def __init__(self, rows: list[dict] | None = None) -> None:
        self.rows = rows or []
        self.statements: list[str] = []

    @asynccontextmanager
    async def connect(self):
        yield _Conn(self)

    @asynccontextmanager
    async def begin(self):
        yield _Conn(self)


def test_every_inventory_schema_compiles_on_fresh_metadata() -> None:
    metadata = MetaData()
    engine = _RecordingEngine()
    tables = {name: compile_model(engine, metadata, name, schema).table.name for name, schema in MODEL_SCHEMAS.items()}
    assert tables == {
        "Category": "categories",
        "Product": "products",
        "Warehouse": "warehouses",
        "Inventory": "inventory",
    }


def test_same_table_cannot_be_compiled_twice_on_one_metadata() -> None:
    metadata = MetaData()
    compile_model(_RecordingEngine(), metadata, "Product", PRODUCT)
    with pytest.raises(InvalidRequestError):
        compile_model(_RecordingEngine(), metadata, "Product", PRODUCT)


@pytest.mark.asyncio
async def test_tenant_model_queries_go_through_its_engine() -> None:
    engine = _RecordingEngine(rows=[{"id": "p-1", "sku": "SKU-1"}])
    model = compile_model(engine, MetaData(), "Product", PRODUCT)

    rows = await model.fetch_all(model.table.c.is_active.is_(True), limit=10, offset=5)
    total = await model.count()
    await model.insert({"id": "p-2", "sku": "SKU-2", "name": "Widget"})

    assert rows == [{"id": "p-1", "sku": "SKU-1"}]
    assert total == 1
    assert "FROM products" in engine.statements[0]
    assert "LIMIT" in engine.statements[0]
    assert "count(*)" in engine.statements[1]
    assert engine.statements[2].startswith("INSERT INTO products")
