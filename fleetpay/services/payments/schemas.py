from typing import Any, Literal

from pydantic import BaseModel, Field


WebhookOutcome = Literal["authorized", "succeeded", "failed", "canceled"]


class WebhookEvent(BaseModel):
    """Provider-verified payment event."""

    ref: str = Field(min_length=1)
    outcome: WebhookOutcome
    raw_event_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
