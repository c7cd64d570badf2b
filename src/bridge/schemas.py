"""Pydantic schemas for bridge events and agent results."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BridgeSignal(str, Enum):
    """The fixed set of signals a session bridge publishes."""

    CALL_STARTED = "callStarted"
    AUDIO = "audio"
    INTERRUPTED = "interrupted"
    END_OF_INTERACTION = "endOfInteraction"
    ERROR = "error"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class QueryResult(_Frozen):
    """Final result of one detect-intent turn."""

    intent_name: str = ""
    intent_display_name: str = ""
    end_interaction: bool = False
    parameters: dict[str, Any] = Field(default_factory=dict)
    fulfillment_text: str = ""

    def to_payload(self) -> dict[str, Any]:
        """Shape handed to the end-of-interaction redirect target."""

        return {
            "intent": {
                "name": self.intent_name,
                "displayName": self.intent_display_name,
            },
            "parameters": self.parameters,
        }


class AgentResponse(_Frozen):
    """One message received from the agent's response stream."""

    transcript: str = ""
    end_of_single_utterance: bool = False
    query_result: QueryResult | None = None
    output_audio: bytes = b""


class CallStarted(_Frozen):
    call_sid: str
    stream_sid: str


class OutboundAudio(_Frozen):
    payload: bytes = Field(description="Mu-law @ 8 kHz audio ready for the telephony leg.")
    frames: tuple[str, ...] = Field(description="Serialized telephony frames to write, in order.")


class Interrupted(_Frozen):
    transcript: str
    clear_frame: str


class EndOfInteraction(_Frozen):
    call_sid: str | None = None
    query_result: QueryResult


class BridgeFailure(_Frozen):
    cause: BaseException
