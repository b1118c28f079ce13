from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from planloop.agents.executor import ExecutorBusyError
from planloop.api.errors import (
    APIError,
    api_error_handler,
    busy_error_handler,
    plan_validation_error_handler,
    registry_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from planloop.config.load_config import load_app_config
from planloop.plan.store import PlanValidationError
from planloop.runtime.sessions import SessionRegistry
from planloop.storage.sqlite_store import EventJournal
from planloop.tools.registry import CapabilityRegistryError

from .routers.health import router as health_router
from .routers.sessions import router as sessions_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("PLANLOOP_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        config = load_app_config()
        journal = EventJournal() if config.journal.enabled else None
        sessions = SessionRegistry(config=config, journal=journal)
        app.state.sessions = sessions
        try:
            yield
        finally:
            sessions.close()
            if journal is not None:
                journal.close()

    app = FastAPI(title="planloop API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PlanValidationError, plan_validation_error_handler)
    app.add_exception_handler(CapabilityRegistryError, registry_error_handler)
    app.add_exception_handler(ExecutorBusyError, busy_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(sessions_router, prefix="/api/v1", tags=["sessions"])

    return app


app = create_app()
