"""Per-tenant table models.

``TenantModel`` offers ``fetch_all``, ``count`` and ``insert``. That is the whole
query surface the inventory CRUD handlers get, and those handlers live outside
this service.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from sqlalchemy import MetaData, Table, func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import SchemaItem

from stockgate.core.errors import ModelSchemaConflict


@dataclass(frozen=True)
class ModelSchema:
    # Columns are produced by a factory because SQLAlchemy columns bind to exactly one table.
    table_name: str
    columns: Callable[[], Iterable[SchemaItem]]


@dataclass(frozen=True)
class TenantModel:
    # A schema compiled against one tenant's metadata and bound to that tenant's engine.
    name: str
    schema: ModelSchema
    table: Table
    engine: Any

    async def fetch_all(
        self,
        *criteria: Any,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        stmt = select(self.table).where(*criteria)
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            stmt = stmt.offset(offset)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

    async def count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self.table).where(*criteria)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return int(result.scalar_one())

    async def insert(self, values: Mapping[str, Any]) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(insert(self.table).values(**values))


ModelCompiler = Callable[[Any, MetaData, str, ModelSchema], TenantModel]


def compile_model(engine: AsyncEngine, metadata: MetaData, model_name: str, schema: ModelSchema) -> TenantModel:
    # MetaData refuses to define the same table twice, so a second compile for one tenant fails loudly.
    table = Table(schema.table_name, metadata, *schema.columns())
    return TenantModel(name=model_name, schema=schema, table=table, engine=engine)


class ModelCache:
    """Per-tenant model registry.

    Entries can only be added through :meth:`get_or_compile`, which looks up and
    stores in one synchronous step, so a name is compiled at most once for the
    lifetime of the owning connection.
    """

    def __init__(self, compiler: ModelCompiler = compile_model) -> None:
        self._compiler = compiler
        self._models: dict[str, TenantModel] = {}
        self.metadata = MetaData()

    def get_or_compile(self, handle: Any, model_name: str, schema: ModelSchema) -> TenantModel:
        existing = self._models.get(model_name)
        if existing is not None:
            if existing.schema != schema:
                raise ModelSchemaConflict(details={"model": model_name})
            return existing
        model = self._compiler(handle, self.metadata, model_name, schema)
        self._models[model_name] = model
        return model

    def __contains__(self, model_name: object) -> bool:
        return model_name in self._models

    def __len__(self) -> int:
        return len(self._models)
