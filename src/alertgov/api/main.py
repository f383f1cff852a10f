"""
alertgov API entry point: ``uvicorn alertgov.api.main:app``
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from alertgov.api.app import create_app
from alertgov.config import load_config
from alertgov.service import GovernanceService

logging.basicConfig(level=os.getenv("ALERTGOV_LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def build_app() -> FastAPI:
    config = load_config()
    service = GovernanceService.from_config(config)
    app = create_app(service)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("Starting alertgov governance loops...")
        if os.getenv("ALERTGOV_AUTOSTART", "true").lower() == "true":
            service.start()
        yield
        logger.info("Shutting down alertgov...")
        service.close()

    app.router.lifespan_context = lifespan
    return app


app = build_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("ALERTGOV_HOST", "0.0.0.0"),
        port=int(os.getenv("ALERTGOV_PORT", "8080")),
    )
