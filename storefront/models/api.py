"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.

Field names follow the browser client's camelCase contract via aliases.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Checkout Models
# ============================================================================


class CreatePaymentRequest(BaseModel):
    """POST /create-payment and /create-subscription request body.

    Unknown fields (a client-supplied amount, for example) are ignored.
    """

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productID", min_length=1, max_length=100)
    turnstile_token: str | None = Field(None, alias="turnstileToken", max_length=4096)
    email: str | None = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class GatewayFormData(BaseModel):
    """Fields of the auto-submitted form posted to the gateway."""

    MerID: str
    Version: str
    EncryptInfo: str
    HashInfo: str


class PaymentFormResponse(BaseModel):
    """Signed payload the browser posts to the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    pay_url: str = Field(..., alias="payUrl")
    data: GatewayFormData
    trade_number: str = Field(..., alias="tradeNo")


# ============================================================================
# Result Models
# ============================================================================


class PaymentResultResponse(BaseModel):
    """GET /api/order-result/{token} response - redirect summary, read once."""

    model_config = ConfigDict(populate_by_name=True)

    status: str | None = None
    trade_number: str | None = Field(None, alias="tradeNo")
    trade_seq: str | None = Field(None, alias="tradeSeq")
    trade_amount: str | None = Field(None, alias="tradeAmt")
    pay_time: str | None = Field(None, alias="payTime")
    message: str | None = None


class OrderStatusResponse(BaseModel):
    """GET /api/orders/{trade_number} response."""

    model_config = ConfigDict(populate_by_name=True)

    trade_number: str = Field(..., alias="tradeNo")
    product_id: str = Field(..., alias="productID")
    status: Literal["pending", "completed", "failed", "expired"]
    amount: int
    updated_at: str = Field(..., alias="updatedAt")


class CsrfTokenResponse(BaseModel):
    """GET /csrf-token response."""

    model_config = ConfigDict(populate_by_name=True)

    csrf_token: str = Field(..., alias="csrfToken")


# ============================================================================
# Health / Error Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected", "not_configured"]
    gateway: Literal["sandbox", "production"]
    timestamp: str


class ErrorResponse(BaseModel):
    """Error body for every failed browser-facing request."""

    error: str
