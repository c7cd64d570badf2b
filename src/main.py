"""Entry point for the Twilio to Dialogflow media stream bridge."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


def log_configuration(settings: Settings) -> None:
    for name in settings.missing_required():
        LOGGER.error("Missing or empty: %s", name.upper())
    LOGGER.info("TWILIO_AUTH_TOKEN: %s", "present" if settings.twilio_auth_token else "missing")
    if settings.google_key_base64:
        LOGGER.info("GOOGLE_KEY_BASE64: [loaded, length: %d chars]", len(settings.google_key_base64))
    LOGGER.info("DIALOGFLOW_PROJECT_ID: %s", settings.dialogflow_project_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_configuration(get_settings())
    yield


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Dialogflow Media Stream Bridge",
    description="Bridges Twilio Media Streams calls to a Dialogflow agent.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
