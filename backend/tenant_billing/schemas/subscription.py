from pydantic import BaseModel, Field, model_validator
from typing import Optional
from datetime import date, datetime


class ConfirmSubscriptionRequest(BaseModel):
    setup_intent_id: Optional[str] = None


class BillingPortalRequest(BaseModel):
    return_url: Optional[str] = None


class SubscribeResponse(BaseModel):
    client_secret: Optional[str] = None
    subscription_id: str
    status: str
    trial_days: int = 0
    requires_payment_method: bool = True
    publishable_key: Optional[str] = None


class SubscriptionStateInfo(BaseModel):
    state: str
    has_full_access: bool
    is_public_allowed: bool
    access_expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    trial_days_remaining: Optional[int] = None
    platform_trial_days_remaining: Optional[int] = None
    message: str

    model_config = {"from_attributes": True}


class SubscriptionInfo(BaseModel):
    status: str
    stripe_subscription_id: Optional[str] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    placement_credits_available: int = 0
    placement_credits_used: int = 0
    credits_reset_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SubscriptionStatusResponse(BaseModel):
    subscription: Optional[SubscriptionInfo] = None
    state_info: SubscriptionStateInfo
    trial_eligible: bool = False


class ConfirmSubscriptionResponse(BaseModel):
    status: str
    state_info: SubscriptionStateInfo
    invoice_paid: bool = False
    activated_communities: int = 0


# =========================================================
# 掲載クレジット
# =========================================================

class CreditCheckRequest(BaseModel):
    credits_needed: Optional[int] = Field(default=None, ge=1)
    placements: Optional[int] = Field(default=None, ge=1)
    duration_days: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _require_amount(self):
        if self.credits_needed is None and (self.placements is None or self.duration_days is None):
            raise ValueError("credits_needed または placements と duration_days を指定してください")
        return self


class CreditSpendRequest(BaseModel):
    placements: list[str] = Field(min_length=1)
    start_date: date
    end_date: date
    campaign_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("終了日は開始日以降の日付を指定してください")
        return self


class CreditBalance(BaseModel):
    has_credits: bool
    available: int
    used: int
    reset_date: Optional[datetime] = None
    state: str
    message: str


class CreditSpendResponse(BaseModel):
    success: bool
    credits_deducted: int
    remaining: int
    usage_id: Optional[int] = None


class CreditUsageInfo(BaseModel):
    id: int
    campaign_id: Optional[str] = None
    placements_used: list
    credits_deducted: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
