"""Entry point for the Twilio media-stream voice gateway."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api.dependencies import get_gateway
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to start without backend credentials.
    get_gateway()
    LOGGER.info("Realtime gateway ready")
    yield


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Realtime Voice Gateway",
    description="Bridges Twilio media streams to a realtime conversational agent.",
    lifespan=lifespan,
)
app.include_router(api_router)
app.include_router(twilio_router)


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)


if __name__ == "__main__":
    run()
