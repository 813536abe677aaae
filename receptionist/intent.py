"""Speech intent classification for the gather (non-bridge) call path.

The model is asked for a JSON object ``{intent, reply, datetimeISO?}``.
Anything that goes wrong (no API key, timeout, unparsable answer) degrades
to the ``general`` intent with a stock reply, so the caller always hears
something.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from anthropic import AsyncAnthropic
from pydantic import ValidationError as PydanticValidationError

from receptionist.datetime_resolver import Clock, clock_for
from receptionist.errors import UpstreamFailure, call_with_timeout
from receptionist.models.intent import IntentResult

log = logging.getLogger("receptionist.intent")

FALLBACK_REPLY = "Thanks for calling. How can I help you?"

INTENT_SYNONYMS = {
    "book_appointment": "schedule",
    "schedule_appointment": "schedule",
    "booking": "schedule",
    "appointment": "schedule",
    "book": "schedule",
    "hello": "greeting",
    "greet": "greeting",
    "transfer_call": "transfer",
    "route": "transfer",
    "open_hours": "hours",
    "hours_info": "hours",
}
INTENTS = {"schedule", "hours", "greeting", "transfer", "general"}

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def fallback_intent() -> IntentResult:
    return IntentResult(intent="general", reply=FALLBACK_REPLY)


def normalize_intent(raw: Any) -> str:
    key = str(raw or "").strip().lower()
    key = INTENT_SYNONYMS.get(key, key)
    return key if key in INTENTS else "general"


def parse_intent_payload(content: str) -> IntentResult:
    """Parse model output, salvaging a JSON object embedded in prose."""
    data: Optional[dict] = None
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        match = _JSON_OBJECT_RE.search(content or "")
        if match:
            try:
                data = json.loads(match.group(0))
            except json.JSONDecodeError:
                data = None
    if not isinstance(data, dict):
        log.warning("Unparsable intent output: %.200s", content)
        return fallback_intent()

    data["intent"] = normalize_intent(data.get("intent"))
    if not str(data.get("reply") or "").strip():
        data["reply"] = FALLBACK_REPLY
    else:
        data["reply"] = str(data["reply"])[:800]
    if not data.get("datetimeISO"):
        data.pop("datetimeISO", None)
    try:
        return IntentResult.model_validate(data)
    except PydanticValidationError as e:
        log.warning("Intent output failed validation: %s", e)
        return fallback_intent()


class IntentClassifier:
    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        model: str = "claude-3-5-haiku-latest",
        business_name: str = "our office",
        timezone: str = "America/Chicago",
        timeout: float = 8.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._client = client
        self._model = model
        self._business = business_name
        self._timezone = timezone
        self._timeout = timeout
        self._clock = clock or clock_for(timezone)

    @classmethod
    def from_settings(cls, settings) -> "IntentClassifier":
        client = None
        if settings.anthropic_api_key.strip():
            client = AsyncAnthropic(api_key=settings.anthropic_api_key)
        return cls(
            client=client,
            model=settings.intent_model,
            business_name=settings.business_name,
            timezone=settings.business_timezone,
            timeout=settings.upstream_timeout_seconds,
        )

    def _system_prompt(self) -> str:
        now = self._clock().isoformat()
        return "\n".join([
            f"You are the phone receptionist for {self._business}.",
            "Analyze the caller's utterance and decide the intent.",
            "Intent MUST be one of: schedule | hours | greeting | transfer | general.",
            "Return a short, friendly reply to speak back to the caller.",
            "If the caller wants to book and names a time, give datetimeISO in ISO 8601.",
            f"The current time is {now}; assume timezone {self._timezone}.",
            "Dates MUST be in the future relative to now.",
        ])

    async def classify(self, text: str, timeout: Optional[float] = None) -> IntentResult:
        if self._client is None:
            return fallback_intent()
        try:
            response = await call_with_timeout(
                self._client.messages.create(
                    model=self._model,
                    max_tokens=300,
                    temperature=0.2,
                    system=self._system_prompt(),
                    messages=[{
                        "role": "user",
                        "content": (
                            f"Caller said:\n{text}\n"
                            "Respond ONLY as a JSON object with fields: "
                            "intent, reply, datetimeISO (optional)."
                        ),
                    }],
                ),
                timeout or self._timeout,
                "Intent classification",
            )
        except UpstreamFailure as e:
            log.warning("Intent classification failed: %s", e)
            return fallback_intent()

        content = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        result = parse_intent_payload(content)
        log.info("Intent: %s (datetime=%s)", result.intent, result.datetime_iso)
        return result
