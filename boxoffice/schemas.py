from decimal import Decimal
from typing import Optional

from pydantic import AwareDatetime, BaseModel, Field, field_validator

from .models import Tier

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterReq(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    name: Optional[str] = Field(default=None, max_length=120)


class RoleReq(BaseModel):
    role: str


class TierReq(BaseModel):
    name: Tier
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    capacity: int = Field(ge=1)


class CreateEventReq(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    location: str = Field(min_length=1, max_length=200)
    starts_at: AwareDatetime
    ends_at: AwareDatetime
    tiers: list[TierReq] = Field(min_length=1)


class TierUpdateReq(BaseModel):
    name: Tier
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    capacity: Optional[int] = Field(default=None, ge=0)


class UpdateEventReq(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    location: Optional[str] = Field(default=None, min_length=1, max_length=200)
    starts_at: Optional[AwareDatetime] = None
    ends_at: Optional[AwareDatetime] = None
    is_active: Optional[bool] = None
    tiers: Optional[list[TierUpdateReq]] = None


class PurchaseReq(BaseModel):
    event_id: str
    tier: Tier
    quantity: int = Field(default=1, ge=1, le=10)


class BatchItemReq(BaseModel):
    tier: Tier
    quantity: int = Field(ge=1, le=5)


class BatchPurchaseReq(BaseModel):
    event_id: str
    tickets: list[BatchItemReq] = Field(min_length=1, max_length=5)


class TransferReq(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)


class ValidateReq(BaseModel):
    scan_token: str = Field(min_length=1)
    location: str = Field(default="Unknown", max_length=200)


class RefundReq(BaseModel):
    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class ForceRefundReq(RefundReq):
    ticket_id: str
    refund_amount: Optional[Decimal] = Field(default=None, ge=0)
