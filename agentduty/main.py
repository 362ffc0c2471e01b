from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentduty.api.routes import admin, health, notifications, slack, sms
from agentduty.core.config import get_settings
from agentduty.core.logging import configure_logging
from agentduty.core.middleware import RateLimitMiddleware, RequestContextMiddleware
from agentduty.db.init_db import init_db


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    settings.validate_production_safety()

    app = FastAPI(title="AgentDuty API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router)
    app.include_router(notifications.router)
    app.include_router(admin.router)
    app.include_router(slack.router)
    app.include_router(sms.router)

    @app.get("/", tags=["root"])
    def root() -> dict:
        return {
            "name": "AgentDuty API",
            "status": "ok",
            "health": "/v1/health",
            "docs": "/docs",
        }

    return app


app = create_app()
