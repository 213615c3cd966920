from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import CONFIG
from .display_session import get_display_hub
from .logging_config import configure_logging
from .routes import auth as auth_routes
from .routes import calendar as calendar_routes
from .routes import control as control_routes
from .routes import dashboard as dashboard_routes
from .routes import display as display_routes
from .routes import gallery as gallery_routes
from .routes import medications as medication_routes
from .routes import mom as mom_routes
from .routes import settings as settings_routes
from .routes import shopping as shopping_routes
from .routes import tasks as task_routes
from .routes import tutorials as tutorial_routes

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("famcare api starting", extra={"realtime_backend": CONFIG.realtime_backend})
    yield
    await get_display_hub().shutdown()


app = FastAPI(
    title="Famcare API",
    version="0.1.0",
    description="Family coordination around mom: her display, meds, tasks and shopping",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(auth_routes.router)
app.include_router(display_routes.router)
app.include_router(control_routes.router)
app.include_router(dashboard_routes.router)
app.include_router(mom_routes.router)
app.include_router(medication_routes.router)
app.include_router(task_routes.router)
app.include_router(shopping_routes.router)
app.include_router(calendar_routes.router)
app.include_router(settings_routes.router)
app.include_router(gallery_routes.router)
app.include_router(tutorial_routes.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/")
async def root() -> dict:
    return {"message": "Famcare API ready"}
