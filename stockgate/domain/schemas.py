"""Tenant inventory tables.

``MODEL_SCHEMAS`` is what the inventory CRUD handlers register through
``TenantContext.acquire_model``. Those handlers live outside this service.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func

from stockgate.persistence.models import ModelSchema


def _category_columns() -> list[Column]:
    return [
        Column("id", String(36), primary_key=True),
        Column("name", String(120), nullable=False, unique=True),
        Column("description", Text),
        Column("is_active", Boolean, nullable=False, server_default="true"),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
    ]


def _product_columns() -> list[Column]:
    return [
        Column("id", String(36), primary_key=True),
        Column("sku", String(64), nullable=False, unique=True),
        Column("name", String(200), nullable=False),
        Column("category_id", String(36), ForeignKey("categories.id")),
        Column("unit_price", Numeric(12, 2), nullable=False, server_default="0"),
        Column("is_active", Boolean, nullable=False, server_default="true"),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    ]


def _warehouse_columns() -> list[Column]:
    return [
        Column("id", String(36), primary_key=True),
        Column("code", String(32), nullable=False, unique=True),
        Column("name", String(200), nullable=False),
        Column("location", String(255)),
        Column("is_active", Boolean, nullable=False, server_default="true"),
    ]


def _inventory_columns() -> list[Column]:
    return [
        Column("id", String(36), primary_key=True),
        Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
        Column("warehouse_id", String(36), ForeignKey("warehouses.id"), nullable=False),
        Column("quantity", Integer, nullable=False, server_default="0"),
        Column("reserved_quantity", Integer, nullable=False, server_default="0"),
        Column("reorder_level", Integer, nullable=False, server_default="0"),
        Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    ]


CATEGORY = ModelSchema(table_name="categories", columns=_category_columns)
PRODUCT = ModelSchema(table_name="products", columns=_product_columns)
WAREHOUSE = ModelSchema(table_name="warehouses", columns=_warehouse_columns)
INVENTORY = ModelSchema(table_name="inventory", columns=_inventory_columns)

MODEL_SCHEMAS: dict[str, ModelSchema] = {
    "Category": CATEGORY,
    "Product": PRODUCT,
    "Warehouse": WAREHOUSE,
    "Inventory": INVENTORY,
}
