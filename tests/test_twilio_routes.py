from __future__ import annotations

import asyncio
import base64
import io
import json
import threading

import numpy as np
import soundfile as sf
from fastapi.testclient import TestClient

from bridge.schemas import AgentResponse, QueryResult


def _goodbye_audio() -> bytes:
    pcm = (np.sin(np.linspace(0, 40 * np.pi, 1600)) * 8000).astype(np.int16)
    buffer = io.BytesIO()
    sf.write(buffer, pcm, 16000, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


class ScriptedStream:
    """Answers the first audio chunk with a closing turn.

    The response is queued from ``write`` so everything stays on the app's
    event loop.
    """

    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self._responses: asyncio.Queue = asyncio.Queue()
        self._send_closed = False

    @property
    def send_closed(self) -> bool:
        return self._send_closed

    async def write(self, chunk: bytes) -> bool:
        if self._send_closed:
            return False
        self.chunks.append(chunk)
        if len(self.chunks) == 1:
            self._responses.put_nowait(
                AgentResponse(
                    query_result=QueryResult(
                        intent_name="projects/p/agent/intents/9",
                        intent_display_name="Goodbye",
                        end_interaction=True,
                        parameters={"reason": "done"},
                    ),
                    output_audio=_goodbye_audio(),
                )
            )
        return True

    def half_close(self) -> None:
        if not self._send_closed:
            self._send_closed = True
            self._responses.put_nowait(None)

    def close(self) -> None:
        self.half_close()

    async def responses(self):
        while True:
            item = await self._responses.get()
            if item is None:
                return
            yield item


class ScriptedFactory:
    def __init__(self) -> None:
        self.opened: list[bool] = []

    async def open(self, session_id: str, *, first_turn: bool) -> ScriptedStream:
        self.opened.append(first_turn)
        return ScriptedStream()


class SignallingController:
    def __init__(self) -> None:
        self.calls: list[tuple[str | None, QueryResult]] = []
        self.done = threading.Event()

    async def end_interaction(self, call_sid, query_result) -> bool:
        self.calls.append((call_sid, query_result))
        self.done.set()
        return True


def test_twiml_connects_call_to_media_stream(app):
    with TestClient(app) as client:
        resp = client.post("/api/twilio/twiml", headers={"x-original-host": "abc.ngrok.io"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Connect><Stream url=\"wss://abc.ngrok.io/api/twilio/media\" /></Connect>" in resp.text


def test_twiml_prefers_configured_public_base_url(app, monkeypatch):
    from config.settings import get_settings

    monkeypatch.setenv("PUBLIC_BASE_URL", "https://bridge.example.com/")
    get_settings.cache_clear()
    try:
        with TestClient(app) as client:
            resp = client.post("/api/twilio/twiml")
    finally:
        monkeypatch.delenv("PUBLIC_BASE_URL")
        get_settings.cache_clear()

    assert "wss://bridge.example.com/api/twilio/media" in resp.text


def test_media_stream_runs_call_to_end_of_interaction(app):
    import api.dependencies as deps

    factory = ScriptedFactory()
    controller = SignallingController()
    app.dependency_overrides[deps.get_agent_factory] = lambda: factory
    app.dependency_overrides[deps.get_call_controller] = lambda: controller

    try:
        with TestClient(app) as client:
            with client.websocket_connect("/api/twilio/media") as ws:
                ws.send_text(json.dumps({"event": "connected", "protocol": "Call"}))
                ws.send_text(
                    json.dumps(
                        {
                            "event": "start",
                            "start": {"callSid": "CA42", "streamSid": "MZ42"},
                            "streamSid": "MZ42",
                        }
                    )
                )
                ws.send_text(
                    json.dumps(
                        {
                            "event": "media",
                            "streamSid": "MZ42",
                            "media": {"track": "inbound", "payload": base64.b64encode(b"\xff" * 160).decode("ascii")},
                        }
                    )
                )

                media = json.loads(ws.receive_text())
                mark = json.loads(ws.receive_text())

                assert media["event"] == "media"
                assert media["streamSid"] == "MZ42"
                assert len(base64.b64decode(media["media"]["payload"])) == 800
                assert mark == {"streamSid": "MZ42", "event": "mark", "mark": {"name": "endOfInteraction"}}

                ws.send_text(json.dumps({"event": "mark", "streamSid": "MZ42", "mark": {"name": "endOfInteraction"}}))
                assert controller.done.wait(timeout=5)
    finally:
        app.dependency_overrides.clear()

    assert factory.opened == [True]
    [(call_sid, query_result)] = controller.calls
    assert call_sid == "CA42"
    assert query_result.to_payload()["intent"]["displayName"] == "Goodbye"
