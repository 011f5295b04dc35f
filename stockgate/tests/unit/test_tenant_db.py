from __future__ import annotations

import pytest

from stockgate.persistence.tenant_db import build_tenant_url, validate_database_name


def test_database_name_replaces_only_database_component() -> None:
    url = build_tenant_url("postgresql+asyncpg://app:pw@db.internal:5432/postgres", "client_acme")
    assert url == "postgresql+asyncpg://app:pw@db.internal:5432/client_acme"


@pytest.mark.parametrize("name", ["", "a/b", "db?sslmode=disable", "x" * 64, "../etc", "name with space"])
def test_unsafe_database_names_are_rejected(name) -> None:
    with pytest.raises(ValueError):
        validate_database_name(name)


def test_typical_database_names_are_accepted() -> None:
    assert validate_database_name("inventory_client-42") == "inventory_client-42"
