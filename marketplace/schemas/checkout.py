"""Checkout Pydantic schemas for API request/response models."""

from pydantic import BaseModel, Field, HttpUrl


class CheckoutSessionCreate(BaseModel):
    """Schema for creating a checkout session via POST /checkout/session."""

    success_url: HttpUrl = Field(description="URL to redirect after successful checkout")
    cancel_url: HttpUrl = Field(description="URL to redirect if checkout is cancelled")
    coupon_code: str | None = Field(default=None, max_length=64, description="Optional coupon code")
    affiliate_ref: str | None = Field(default=None, max_length=64, description="Optional affiliate code")


class CheckoutSessionResponse(BaseModel):
    """Schema for checkout session creation response."""

    session_id: str = Field(description="Stripe Checkout Session ID")
    url: str = Field(description="Stripe Checkout URL to redirect to")
