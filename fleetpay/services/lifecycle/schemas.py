"""API request/response schemas for lifecycle endpoints.

Action-specific fields are optional here; the gating engine answers a missing
reason or decision with a structured denial and an audit entry.
"""

from typing import Literal

from pydantic import BaseModel, Field


class DeliveryCreateRequest(BaseModel):
    miles: float = Field(gt=0)
    weight_lbs: float = Field(gt=0)
    stops: int = Field(default=0, ge=0)
    rush: bool = False
    signature_required: bool = False
    heavy_item_acknowledged: bool = False


class RentalCreateRequest(BaseModel):
    rate_cents: int = Field(gt=0)
    deposit_cents: int = Field(default=0, ge=0)
    purpose: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class AssignDriverRequest(BaseModel):
    driver_id: str | None = None


class ReviewRequest(BaseModel):
    decision: str | None = None
    reason: str | None = None
    lockbox_code: str | None = Field(default=None, pattern=r"^\d{4,8}$")


class SignAgreementRequest(BaseModel):
    purpose: str | None = None
    signature_name: str | None = None


class LockboxRequest(BaseModel):
    lockbox_code: str | None = Field(default=None, pattern=r"^\d{4,8}$")


class DamageRequest(BaseModel):
    confirmed: bool = True
    notes: str | None = None


class DepositRequest(BaseModel):
    decision: str | None = None
    amount_cents: int | None = None
    reason: str | None = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    result: Literal["applied", "duplicate", "ignored"]
