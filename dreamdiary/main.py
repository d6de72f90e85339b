from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from dreamdiary.config import DEV_JWT_SECRET, Settings
from dreamdiary.controllers import v1
from dreamdiary.db import init_db
from dreamdiary.logger import setup_logging

settings = Settings()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    if settings.is_production and settings.jwt_secret == DEV_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; sessions use the development secret")
    yield


app = FastAPI(
    title="Dream Diary API",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(v1.router)

Instrumentator().instrument(app).expose(app)
