"""Domain-specific exceptions for the media bridge.

These exceptions are safe to import from API layers without pulling in the
Google client libraries.
"""

from __future__ import annotations


class BridgeError(Exception):
    default_detail: str = "Bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class TransportClosedError(BridgeError):
    default_detail = "Media or agent stream closed unexpectedly."


class TranscodeError(BridgeError):
    default_detail = "Agent audio could not be transcoded."


class InvalidTransitionError(BridgeError):
    default_detail = "Illegal session state transition."


class CallControlError(BridgeError):
    default_detail = "Call update failed."
