"""Serve the reconciliation API with uvicorn."""
from __future__ import annotations

import uvicorn

from .config import Settings, configure_logging, get_settings


def run(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    uvicorn.run(
        "stock_reconciliation.api:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
