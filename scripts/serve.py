from __future__ import annotations

import uvicorn

from stockgate.apps.api.main import create_app
from stockgate.core.config import get_settings


def main() -> None:
    # Run the gateway with env-driven settings; the lifespan builds and tears down the pipeline.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
