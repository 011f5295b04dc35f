from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

import httpx
from redis.asyncio import Redis
from sqlalchemy.engine import make_url

from stockgate.core.config import get_settings
from stockgate.persistence.tenant_db import close_tenant_engine, connect_tenant_engine


async def _check_redis() -> bool:
    # Validate Redis reachability only when the shared counter store is in use.
    settings = get_settings()
    if not settings.rate_limit_enabled or settings.rl_store.lower() != "redis":
        return True
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except Exception:  # noqa: BLE001 - report reachability, never raise
        return False
    finally:
        await client.aclose()


async def _check_authority() -> bool:
    # Any HTTP answer proves the authority is reachable; token validation is not exercised.
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=settings.authority_timeout_ms / 1000.0) as client:
            await client.get(settings.authority_base_url)
    except httpx.HTTPError:
        return False
    return True


async def _check_tenant_server() -> bool:
    # Connect to the database named in the base URL with the same engine settings tenants get.
    settings = get_settings()
    database = make_url(settings.tenant_database_url).database or "postgres"
    try:
        engine = await asyncio.wait_for(
            connect_tenant_engine(database), timeout=settings.tenant_connect_timeout_ms / 1000.0
        )
    except Exception:  # noqa: BLE001 - report reachability, never raise
        return False
    await close_tenant_engine(engine)
    return True


async def run_preflight(*, output_json: str | None) -> int:
    results: list[dict[str, Any]] = []
    for name, check in (
        ("redis_reachable", _check_redis),
        ("authority_reachable", _check_authority),
        ("tenant_db_server_reachable", _check_tenant_server),
    ):
        ok = await check()
        results.append({"check": name, "status": "pass" if ok else "fail"})

    failed = [row for row in results if row["status"] == "fail"]
    summary = {"status": "pass" if not failed else "fail", "checks": results}
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Check gateway dependencies before rollout.")
    parser.add_argument("--output-json", default=None)
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
