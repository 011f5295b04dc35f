from __future__ import annotations

import pytest

from stockgate.core.config import get_settings
from stockgate.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings cache and in-process counters between tests to avoid leaking overrides.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()
