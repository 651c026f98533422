import logging

from fastapi import FastAPI

from loan_intake.core.settings import settings
from loan_intake.db.session import engine

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info(
            "Application startup environment=%s lender_gateway_mode=%s",
            settings.environment,
            settings.lender_gateway_mode,
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        await engine.dispose()
