"""Twilio Media Streams integration.

This module provides:
- TwiML webhook that connects an incoming call to the media WebSocket.
- The media WebSocket itself, bridging each call to a Dialogflow session.
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, Response, WebSocket, WebSocketDisconnect

from api.dependencies import get_agent_factory, get_call_controller
from bridge.schemas import (
    BridgeFailure,
    BridgeSignal,
    CallStarted,
    EndOfInteraction,
    Interrupted,
    OutboundAudio,
)
from bridge.session import SessionBridge
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

MEDIA_PATH = "/api/twilio/media"


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _media_stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(settings.public_base_url.rstrip("/") + MEDIA_PATH)
    # ngrok sets x-original-host
    host = request.headers.get("x-original-host") or request.url.hostname
    return f"wss://{host}{MEDIA_PATH}"


def _twiml_connect_stream(*, stream_url: str) -> str:
    stream = escape(stream_url)
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{stream}\" />"
        "</Connect>"
        "</Response>"
    )


@router.post("/twiml")
async def twilio_twiml(request: Request) -> Response:
    return _twiml_response(_twiml_connect_stream(stream_url=_media_stream_url(request)))


@router.websocket("/media")
async def twilio_media_stream(
    websocket: WebSocket,
    agent_factory=Depends(get_agent_factory),
    call_controller=Depends(get_call_controller),
) -> None:
    await websocket.accept()
    LOGGER.info("WebSocket connection opened with Twilio")

    settings = get_settings()
    bridge = SessionBridge(
        agent_factory,
        inbound_queue_size=settings.bridge_inbound_queue_size,
        output_sample_rate=settings.agent_output_sample_rate,
    )

    async def on_call_started(event: CallStarted) -> None:
        LOGGER.info("Call %s streaming on %s", event.call_sid, event.stream_sid)

    async def on_audio(event: OutboundAudio) -> None:
        LOGGER.debug("Sending audio (%d bytes)", len(event.payload))
        for frame in event.frames:
            await websocket.send_text(frame)

    async def on_interrupted(event: Interrupted) -> None:
        LOGGER.info("Clearing queued playback after %r", event.transcript)
        await websocket.send_text(event.clear_frame)

    async def on_end_of_interaction(event: EndOfInteraction) -> None:
        await call_controller.end_interaction(event.call_sid, event.query_result)

    async def on_error(event: BridgeFailure) -> None:
        LOGGER.error("Bridge error on call %s: %s", bridge.call_sid, event.cause)

    bridge.subscribe(BridgeSignal.CALL_STARTED, on_call_started)
    bridge.subscribe(BridgeSignal.AUDIO, on_audio)
    bridge.subscribe(BridgeSignal.INTERRUPTED, on_interrupted)
    bridge.subscribe(BridgeSignal.END_OF_INTERACTION, on_end_of_interaction)
    bridge.subscribe(BridgeSignal.ERROR, on_error)

    try:
        while True:
            message = await websocket.receive_text()
            await bridge.send(message)
    except WebSocketDisconnect:
        LOGGER.info("MediaStream has finished")
    finally:
        await bridge.finish()
