from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.middleware import SlowAPIMiddleware

from salary_advance.api.v1 import api_router
from salary_advance.core.errors import register_exception_handlers
from salary_advance.core.limiter import limiter
from salary_advance.core.logging import configure_logging
from salary_advance.core.response_envelope import register_response_envelope
from salary_advance.core.settings import settings
from salary_advance.db.session import Database
from salary_advance.events import register_event_handlers
from salary_advance.middlewares.request_context import RequestContextMiddleware

API_PREFIX = "/api/v1"
# Safaricom posts here and expects its own acknowledgement body, not the envelope
WEBHOOK_PREFIX = f"{API_PREFIX}/mpesa"


def _install_middleware(app: FastAPI) -> None:
    # Starlette runs the last-added middleware outermost
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Tenant-ID", "X-Request-ID"],
    )


def create_app(database: Database | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Salary Advance Backend",
        version="0.1.0",
        docs_url="/docs" if settings.environment != "production" else None,
    )
    app.state.database = database or Database(settings.database_url)
    app.state.limiter = limiter

    register_exception_handlers(app)
    register_response_envelope(app, exclude_prefixes=(WEBHOOK_PREFIX,))
    _install_middleware(app)
    app.include_router(api_router, prefix=API_PREFIX)
    register_event_handlers(app)
    return app


app = create_app()
