from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote
from xml.sax.saxutils import escape

from twilio.base.exceptions import TwilioException

from bridge.errors import CallControlError
from bridge.schemas import QueryResult
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

QUERY_RESULT_PARAM = "dialogflowJSON"


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    end_of_interaction_url: str | None = None


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials are not configured")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        end_of_interaction_url=settings.end_of_interaction_url or None,
    )


def build_twilio_client(cfg: TwilioConfig | None = None):
    from twilio.rest import Client

    cfg = cfg or get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


def redirect_url_with_result(url: str, query_result: QueryResult) -> str:
    encoded = quote(json.dumps(query_result.to_payload()), safe="")
    # The target URL may already carry a query string.
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{QUERY_RESULT_PARAM}={encoded}"


def build_end_of_interaction_twiml(query_result: QueryResult, redirect_url: str | None) -> str:
    if redirect_url:
        target = escape(redirect_url_with_result(redirect_url, query_result))
        verb = f"<Redirect>{target}</Redirect>"
    else:
        verb = "<Hangup/>"
    return "<?xml version=\"1.0\" encoding=\"UTF-8\"?>" f"<Response>{verb}</Response>"


class CallController:
    """Hands a finished call back to Twilio: redirect it, or hang up."""

    def __init__(self, client: Any, *, end_of_interaction_url: str | None = None) -> None:
        self._client = client
        self._end_of_interaction_url = end_of_interaction_url

    async def end_interaction(self, call_sid: str | None, query_result: QueryResult) -> bool:
        if not call_sid:
            LOGGER.warning("Cannot update call: no call SID captured for this stream")
            return False

        twiml = build_end_of_interaction_twiml(query_result, self._end_of_interaction_url)
        try:
            await asyncio.to_thread(self._update_call, call_sid, twiml)
        except CallControlError as exc:
            LOGGER.error("%s", exc.detail)
            return False
        except Exception:
            # The caller has usually hung up already; nothing to retry.
            LOGGER.exception("Failed to update Call(%s)", call_sid)
            return False

        LOGGER.info("Updated Call(%s) with twiml: %s", call_sid, twiml)
        return True

    def _update_call(self, call_sid: str, twiml: str) -> None:
        try:
            self._client.calls(call_sid).update(twiml=twiml)
        except TwilioException as exc:
            raise CallControlError(f"Twilio rejected the update of Call({call_sid}): {exc}") from exc
