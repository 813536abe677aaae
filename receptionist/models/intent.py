"""Result of classifying one caller utterance."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

Intent = Literal["schedule", "hours", "greeting", "transfer", "general"]


class IntentResult(BaseModel):
    intent: Intent = "general"
    reply: str = Field(min_length=1, max_length=800)
    datetime_iso: Optional[str] = Field(default=None, alias="datetimeISO")

    model_config = {"populate_by_name": True}
