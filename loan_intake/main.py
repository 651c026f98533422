from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loan_intake.api.v1 import api_router
from loan_intake.core.errors import register_exception_handlers
from loan_intake.core.logging import configure_logging
from loan_intake.core.response_envelope import register_response_envelope
from loan_intake.core.settings import settings
from loan_intake.events import register_event_handlers
from loan_intake.middlewares.request_context import RequestContextMiddleware
from loan_intake.middlewares.security_headers import SecurityHeadersMiddleware


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Loan Intake Backend", version="0.1.0")
    register_exception_handlers(app)
    register_response_envelope(app)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix="/api/v1")
    register_event_handlers(app)
    return app


app = create_app()
