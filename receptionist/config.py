"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

from receptionist.errors import ConfigurationError

log = logging.getLogger("receptionist.config")

HUME_EVI_URL = "wss://api.hume.ai/v0/evi/chat"


class Settings(BaseSettings):
    # Business
    business_name: str = "our office"
    business_timezone: str = "America/Chicago"
    business_days: str = "1,2,3,4,5"  # 0=Sunday .. 6=Saturday
    business_hours: str = "09:00-17:00"
    appointment_duration_minutes: int = 30
    operator_number: str = ""
    voicemail_max_seconds: int = 120

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_validate: bool = False
    voice_mode: str = "gather"  # "gather" or "bridge"
    sms_confirmations: bool = False

    # Google Calendar
    google_service_account_json: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    google_refresh_token: str = ""
    google_calendar_id: str = "primary"

    # Conversational agent (Hume EVI)
    hume_api_key: str = ""
    hume_config_id: str = ""
    agent_ws_url: str = HUME_EVI_URL
    agent_transcode_audio: bool = True

    # Intent LLM (legacy gather path)
    anthropic_api_key: str = ""
    intent_model: str = "claude-3-5-haiku-latest"

    # Runtime
    upstream_timeout_seconds: float = 8.0
    # Twilio gives up on a webhook after 15s; all upstream calls in one must fit
    webhook_budget_seconds: float = 12.0
    session_ttl_seconds: int = 3600
    admin_api_key: str = ""
    debug: bool = False
    managed_runtime: bool = False
    host: str = "127.0.0.1"
    port: int = 3001

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def calendar_configured(self) -> bool:
        oauth = (
            self.google_client_id
            and self.google_client_secret
            and self.google_refresh_token
        )
        return bool(self.google_service_account_json or oauth)

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors.

        Missing Twilio credentials are fatal, except on a managed runtime
        where the process keeps running degraded and only logs the problem.
        """
        warnings: list[str] = []
        _placeholders = {"AC...", "path/to/service-account.json"}

        missing = [
            name.upper()
            for name in ("twilio_account_sid", "twilio_auth_token")
            if not getattr(self, name).strip()
        ]
        if missing:
            msg = "Missing required env vars: " + ", ".join(missing)
            if not self.managed_runtime:
                raise ConfigurationError(msg)
            log.error("%s (continuing on managed runtime)", msg)
            warnings.append(msg)

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Debug APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Debug APIs are locked in production."
                )

        if self.twilio_account_sid in _placeholders:
            warnings.append("TWILIO_ACCOUNT_SID is a placeholder — Twilio calls won't work.")

        if not self.calendar_configured or self.google_service_account_json in _placeholders:
            warnings.append(
                "Google Calendar credentials not configured — bookings will fail."
            )

        if self.voice_mode == "bridge" and not self.hume_api_key:
            warnings.append("VOICE_MODE=bridge but HUME_API_KEY is not set.")

        if self.voice_mode not in ("gather", "bridge"):
            warnings.append(
                f"Unknown VOICE_MODE {self.voice_mode!r}; falling back to gather."
            )

        return warnings


settings = Settings()
