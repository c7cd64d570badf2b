"""Twilio Media Streams envelope decoding and encoding.

Inbound messages are a discriminated union on ``event``; only ``media`` frames
carry audio. Anything that fails validation (bad JSON, unknown tags such as
``connected`` or ``dtmf``, broken base64) is dropped rather than raised.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

END_OF_INTERACTION_MARK = "endOfInteraction"


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class StartPayload(_Envelope):
    call_sid: str = Field(alias="callSid")
    stream_sid: str = Field(alias="streamSid")


class StartFrame(_Envelope):
    event: Literal["start"]
    start: StartPayload


class MediaPayload(_Envelope):
    payload: bytes
    track: str | None = None

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, value: Any) -> bytes:
        if not isinstance(value, str):
            raise ValueError("media payload must be a base64 string")
        return base64.b64decode(value, validate=True)


class MediaFrame(_Envelope):
    event: Literal["media"]
    media: MediaPayload

    @property
    def is_inbound(self) -> bool:
        return self.media.track in (None, "inbound")


class MarkPayload(_Envelope):
    name: str


class MarkFrame(_Envelope):
    event: Literal["mark"]
    mark: MarkPayload


class StopFrame(_Envelope):
    event: Literal["stop"]


InboundFrame = Annotated[
    Union[StartFrame, MediaFrame, MarkFrame, StopFrame],
    Field(discriminator="event"),
]

_INBOUND_FRAME = TypeAdapter(InboundFrame)


def parse_inbound_frame(message: str | bytes) -> StartFrame | MediaFrame | MarkFrame | StopFrame | None:
    try:
        return _INBOUND_FRAME.validate_json(message)
    except ValidationError as exc:
        LOGGER.debug("Dropping malformed telephony frame: %s", exc.errors(include_url=False)[0]["msg"])
        return None


def media_audio(frame: StartFrame | MediaFrame | MarkFrame | StopFrame | None) -> bytes | None:
    """Raw mu-law bytes carried by an inbound media frame, if any."""

    if isinstance(frame, MediaFrame) and frame.is_inbound:
        return frame.media.payload
    return None


class OutboundFrameEncoder:
    """Serializes frames for the Twilio leg of one call.

    The terminal ``endOfInteraction`` mark is handed out exactly once.
    """

    def __init__(self, stream_sid: str | None = None) -> None:
        self.stream_sid = stream_sid
        self._mark_sent = False

    @property
    def mark_sent(self) -> bool:
        return self._mark_sent

    def media(self, audio: bytes) -> str:
        return json.dumps(
            {
                "streamSid": self.stream_sid,
                "event": "media",
                "media": {"payload": base64.b64encode(audio).decode("ascii")},
            }
        )

    def end_of_interaction_mark(self) -> str | None:
        if self._mark_sent:
            return None
        self._mark_sent = True
        return json.dumps(
            {
                "streamSid": self.stream_sid,
                "event": "mark",
                "mark": {"name": END_OF_INTERACTION_MARK},
            }
        )

    def clear(self) -> str:
        return json.dumps({"streamSid": self.stream_sid, "event": "clear"})
