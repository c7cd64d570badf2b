"""Bidirectional streaming detect-intent against Dialogflow.

One ``DialogflowStream`` is opened per pipeline. Its first request carries the
query input (event trigger on the very first turn, audio config afterwards);
every later request carries one chunk of caller audio. The session path is
stable for the whole call so the agent keeps its conversational context.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import dialogflow_v2beta1 as dialogflow
from google.oauth2 import service_account

from bridge.errors import TransportClosedError
from bridge.schemas import AgentResponse, QueryResult
from config.settings import Settings

LOGGER = logging.getLogger(__name__)

TELEPHONY_SAMPLE_RATE = 8000


def build_sessions_client(settings: Settings) -> dialogflow.SessionsAsyncClient:
    if settings.google_key_base64:
        info = json.loads(base64.b64decode(settings.google_key_base64).decode("utf-8"))
        credentials = service_account.Credentials.from_service_account_info(info)
        LOGGER.info("Using Google service account %s", info.get("client_email", "<unknown>"))
        return dialogflow.SessionsAsyncClient(credentials=credentials)

    LOGGER.info("GOOGLE_KEY_BASE64 not set; using application default credentials")
    return dialogflow.SessionsAsyncClient()


def _drain(queue: asyncio.Queue) -> None:
    while not queue.empty():
        queue.get_nowait()


def parse_response(response: dialogflow.StreamingDetectIntentResponse) -> AgentResponse:
    recognition = response.recognition_result
    end_of_utterance = (
        recognition.message_type
        == dialogflow.StreamingRecognitionResult.MessageType.END_OF_SINGLE_UTTERANCE
    )

    query_result = None
    if "query_result" in response:
        raw = response.query_result
        parameters: dict[str, Any] = dialogflow.QueryResult.to_dict(raw).get("parameters") or {}
        query_result = QueryResult(
            intent_name=raw.intent.name,
            intent_display_name=raw.intent.display_name,
            end_interaction=bool(raw.intent.end_interaction),
            parameters=parameters,
            fulfillment_text=raw.fulfillment_text,
        )

    return AgentResponse(
        transcript=recognition.transcript,
        end_of_single_utterance=end_of_utterance,
        query_result=query_result,
        output_audio=bytes(response.output_audio),
    )


class DialogflowStream:
    """One live ``StreamingDetectIntent`` call.

    ``write`` applies backpressure through a bounded queue. ``half_close`` ends
    the request side and lets responses drain; ``close`` also cancels the call.
    Both are idempotent.
    """

    def __init__(
        self,
        client: Any,
        initial_request: dialogflow.StreamingDetectIntentRequest,
        *,
        max_pending: int = 50,
    ) -> None:
        self._client = client
        self._initial_request = initial_request
        self._requests: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max_pending)
        self._call: Any = None
        self._send_closed = False
        self._closed = False

    @property
    def send_closed(self) -> bool:
        return self._send_closed or self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> DialogflowStream:
        self._call = await self._client.streaming_detect_intent(requests=self._request_iter())
        return self

    async def _request_iter(self) -> AsyncIterator[dialogflow.StreamingDetectIntentRequest]:
        yield self._initial_request
        while True:
            chunk = await self._requests.get()
            if chunk is None or self.send_closed:
                return
            yield dialogflow.StreamingDetectIntentRequest(input_audio=chunk)

    async def write(self, chunk: bytes) -> bool:
        if self.send_closed:
            LOGGER.debug("Ignoring %d bytes for an ended Dialogflow request stream", len(chunk))
            return False
        await self._requests.put(chunk)
        return True

    def half_close(self) -> None:
        if self.send_closed:
            return
        LOGGER.info("Gracefully ending Dialogflow request stream")
        self._send_closed = True
        _drain(self._requests)
        self._requests.put_nowait(None)

    def close(self) -> None:
        if self._closed:
            return
        self.half_close()
        self._closed = True
        if self._call is not None:
            self._call.cancel()

    async def responses(self) -> AsyncIterator[AgentResponse]:
        if self._call is None:
            raise TransportClosedError("Dialogflow stream was never opened")
        try:
            async for response in self._call:
                yield parse_response(response)
        except google_exceptions.Cancelled as exc:
            # A CANCELLED status from the server. Our own close() surfaces as
            # asyncio.CancelledError instead and is left to propagate.
            if self._closed:
                return
            raise TransportClosedError(f"Dialogflow stream cancelled: {exc}") from exc
        except google_exceptions.GoogleAPICallError as exc:
            raise TransportClosedError(f"Dialogflow stream failed: {exc}") from exc


class DialogflowStreamFactory:
    """Opens per-turn streams for sessions of one Dialogflow agent."""

    def __init__(
        self,
        client: Any,
        *,
        project_id: str,
        language_code: str = "en-US",
        starting_event_name: str = "WELCOME",
        output_sample_rate: int = 16000,
        max_pending: int = 50,
    ) -> None:
        self._client = client
        self._project_id = project_id
        self._language_code = language_code
        self._starting_event_name = starting_event_name
        self._output_sample_rate = output_sample_rate
        self._max_pending = max_pending

    @property
    def output_sample_rate(self) -> int:
        return self._output_sample_rate

    def session_path(self, session_id: str) -> str:
        return self._client.session_path(self._project_id, session_id)

    def build_initial_request(self, session_id: str, *, first_turn: bool) -> dialogflow.StreamingDetectIntentRequest:
        if first_turn:
            query_input = dialogflow.QueryInput(
                event=dialogflow.EventInput(
                    name=self._starting_event_name,
                    language_code=self._language_code,
                )
            )
        else:
            query_input = dialogflow.QueryInput(
                audio_config=dialogflow.InputAudioConfig(
                    audio_encoding=dialogflow.AudioEncoding.AUDIO_ENCODING_MULAW,
                    sample_rate_hertz=TELEPHONY_SAMPLE_RATE,
                    language_code=self._language_code,
                    single_utterance=True,
                )
            )

        return dialogflow.StreamingDetectIntentRequest(
            session=self.session_path(session_id),
            query_input=query_input,
            output_audio_config=dialogflow.OutputAudioConfig(
                audio_encoding=dialogflow.OutputAudioEncoding.OUTPUT_AUDIO_ENCODING_LINEAR_16,
                sample_rate_hertz=self._output_sample_rate,
            ),
        )

    async def open(self, session_id: str, *, first_turn: bool) -> DialogflowStream:
        request = self.build_initial_request(session_id, first_turn=first_turn)
        LOGGER.info(
            "Opening Dialogflow stream for %s (%s)",
            request.session,
            "event trigger" if first_turn else "audio",
        )
        stream = DialogflowStream(self._client, request, max_pending=self._max_pending)
        return await stream.open()
