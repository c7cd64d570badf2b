"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from config.settings import get_settings

if TYPE_CHECKING:  # pragma: no cover
    from integrations.dialogflow_stream import DialogflowStreamFactory
    from integrations.twilio_client import CallController


@lru_cache(maxsize=1)
def _agent_factory() -> DialogflowStreamFactory:
    # Lazy import keeps the gRPC stack out of module import time.
    from integrations.dialogflow_stream import DialogflowStreamFactory, build_sessions_client

    settings = get_settings()
    if not settings.dialogflow_project_id:
        raise ValueError("DIALOGFLOW_PROJECT_ID is not configured")

    return DialogflowStreamFactory(
        build_sessions_client(settings),
        project_id=settings.dialogflow_project_id,
        language_code=settings.google_language_code,
        starting_event_name=settings.dialogflow_starting_event_name,
        output_sample_rate=settings.agent_output_sample_rate,
        max_pending=settings.agent_request_queue_size,
    )


def get_agent_factory() -> DialogflowStreamFactory:
    return _agent_factory()


@lru_cache(maxsize=1)
def _call_controller() -> CallController:
    from integrations.twilio_client import CallController, build_twilio_client, get_twilio_config

    cfg = get_twilio_config()
    return CallController(build_twilio_client(cfg), end_of_interaction_url=cfg.end_of_interaction_url)


def get_call_controller() -> CallController:
    return _call_controller()
