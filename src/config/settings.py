"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    end_of_interaction_url: str | None = Field(
        default=None,
        description="Where to redirect the call once the agent ends the interaction. Hangs up if unset.",
    )

    # Dialogflow
    dialogflow_project_id: str | None = Field(default=None)
    dialogflow_starting_event_name: str = Field(
        default="WELCOME",
        description="Event that triggers the agent's greeting on the first turn.",
    )
    google_language_code: str = Field(default="en-US")
    google_key_base64: str | None = Field(
        default=None,
        description="Base64-encoded service account JSON. Falls back to application default credentials.",
    )
    agent_output_sample_rate: int = Field(
        default=16000,
        gt=0,
        description="Sample rate requested for synthesized speech; also assumed for header-less PCM.",
    )

    # Bounded channels between pipeline stages
    bridge_inbound_queue_size: int = Field(default=50, ge=1)
    agent_request_queue_size: int = Field(default=50, ge=2)

    def missing_required(self) -> list[str]:
        """Names of settings the media bridge cannot work without."""

        required = {
            "twilio_account_sid": self.twilio_account_sid,
            "twilio_auth_token": self.twilio_auth_token,
            "dialogflow_project_id": self.dialogflow_project_id,
            "google_language_code": self.google_language_code,
        }
        return [name for name, value in required.items() if not value]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
