"""FastAPI application for post registration and investigation intake."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from errata_backend import investigation_api
from errata_backend.config import CORS_ALLOWED_ORIGINS

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    queue = investigation_api._queue
    if queue is not None:
        logger.info("[API] Closing investigation queue")
        await queue.close()


errata_app = FastAPI(lifespan=lifespan)

errata_app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

errata_app.include_router(investigation_api.router)
