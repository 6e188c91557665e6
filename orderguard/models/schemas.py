"""
OrderGuard — Pydantic Schemas (Request / Response DTOs)

All schemas include:
- Input validation with constraints
- Configuration for ORM serialization
"""

from datetime import datetime
from ipaddress import ip_address
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

BlockType = Literal["phone", "ip", "device"]


def _validate_ip(v: Optional[str]) -> Optional[str]:
    """Stored compressed and lower-case so ``2001:DB8::1`` and ``2001:db8::1`` match."""
    if v:
        v = v.strip()
        try:
            v = str(ip_address(v))
        except ValueError:
            raise ValueError(f"Invalid IP address: {v}")
    return v or None


# ===========================================================================
# Fraud signals
# ===========================================================================
class FraudSignalSchema(BaseModel):
    kind: str
    weight: int = 0
    detail: str = ""
    blocking: bool = False


# ===========================================================================
# Checkout
# ===========================================================================
class CheckoutRequest(BaseModel):
    """Checkout attempt as posted by the storefront before it accepts an order."""
    billing_phone: str = Field(default="", max_length=32)
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)
    address_1: str = Field(default="", max_length=255)
    address_2: str = Field(default="", max_length=255)
    city: str = Field(default="", max_length=128)
    postcode: str = Field(default="", max_length=32)
    ip_address: Optional[str] = Field(
        default=None,
        description="Customer IP as seen by the storefront; resolved from headers when omitted",
    )
    device_id: Optional[str] = Field(default=None, max_length=256)
    user_agent: Optional[str] = Field(default=None, max_length=1024)
    customer_order_count: int = Field(
        default=0,
        ge=0,
        description="Completed orders the storefront knows for this customer",
    )
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Customer request headers as received by the storefront (proxy detection, IP resolution)",
    )
    draft_id: Optional[str] = Field(
        default=None,
        max_length=36,
        description="The customer's captured draft; never counts against this checkout",
    )

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v: Optional[str]) -> Optional[str]:
        """Validate IP address format."""
        return _validate_ip(v)


class CheckoutDecisionResponse(BaseModel):
    allowed: bool
    blocked_by: Optional[str] = None
    message: Optional[str] = None
    signals: List[FraudSignalSchema] = []


# ===========================================================================
# Orders
# ===========================================================================
class OrderCreate(BaseModel):
    """An order the storefront has accepted."""
    external_id: Optional[str] = Field(
        default=None,
        max_length=128,
        pattern=r'^[a-zA-Z0-9\-_.#]+$',
        description="Storefront order number",
    )
    billing_phone: str = Field(default="", max_length=32)
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)
    address_1: str = Field(default="", max_length=255)
    address_2: str = Field(default="", max_length=255)
    city: str = Field(default="", max_length=128)
    postcode: str = Field(default="", max_length=32)
    ip_address: Optional[str] = None
    device_id: Optional[str] = Field(default=None, max_length=256)
    user_agent: Optional[str] = Field(default=None, max_length=1024)
    status: str = Field(default="processing", max_length=32)
    total: float = Field(default=0.0, ge=0)
    created_at: Optional[datetime] = Field(
        default=None,
        description="Order time when back-filling history; defaults to now",
    )
    draft_id: Optional[str] = Field(
        default=None,
        max_length=36,
        description="Captured draft this order completes; converted in place",
    )

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v: Optional[str]) -> Optional[str]:
        """Validate IP address format."""
        return _validate_ip(v)

    @field_validator("status")
    @classmethod
    def strip_status_prefix(cls, v: str) -> str:
        """Storefronts may send ``wc-processing``; stored without the prefix."""
        v = v.strip().lower()
        return v[3:] if v.startswith("wc-") else v


class OrderUpdate(BaseModel):
    status: str = Field(..., min_length=1, max_length=32)

    @field_validator("status")
    @classmethod
    def strip_status_prefix(cls, v: str) -> str:
        v = v.strip().lower()
        return v[3:] if v.startswith("wc-") else v


class OrderScoreResponse(BaseModel):
    percentage: int = Field(..., ge=0, le=100)
    signals: List[FraudSignalSchema]
    reason: Optional[str] = None
    scored_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: str
    external_id: Optional[str]
    billing_phone: Optional[str]
    phone_key: Optional[str]
    ip_address: Optional[str]
    device_id: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    address_1: Optional[str]
    city: Optional[str]
    postcode: Optional[str]
    status: str
    total: float
    created_at: datetime
    duplicate_percentage: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class OrderDetailResponse(BaseModel):
    order: OrderResponse
    score: Optional[OrderScoreResponse] = None


class OrderListResponse(BaseModel):
    """Paginated order list."""
    total: int
    page: int
    page_size: int
    items: List[OrderResponse]


# ===========================================================================
# Incomplete-checkout drafts
# ===========================================================================
class DraftCapture(BaseModel):
    """Checkout form contents captured before the customer places the order."""
    draft_id: Optional[str] = Field(default=None, max_length=36)
    billing_phone: str = Field(default="", max_length=32)
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)
    address_1: str = Field(default="", max_length=255)
    address_2: str = Field(default="", max_length=255)
    city: str = Field(default="", max_length=128)
    postcode: str = Field(default="", max_length=32)
    ip_address: Optional[str] = None
    device_id: Optional[str] = Field(default=None, max_length=256)
    user_agent: Optional[str] = Field(default=None, max_length=1024)
    total: float = Field(default=0.0, ge=0)

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v: Optional[str]) -> Optional[str]:
        return _validate_ip(v)


class DraftResponse(BaseModel):
    draft_id: Optional[str] = None
    created: bool = False
    message: str


class DraftPurgeResponse(BaseModel):
    deleted: int
    older_than: Optional[datetime] = None


# ===========================================================================
# Blocklist
# ===========================================================================
class BlockEntryCreate(BaseModel):
    type: BlockType
    value: str = Field(..., min_length=1, max_length=256)
    note: Optional[str] = Field(default=None, max_length=500)

    @field_validator("value")
    @classmethod
    def strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("value must not be blank")
        return v


class BlockEntryResponse(BaseModel):
    id: str
    type: str
    value: str
    note: Optional[str]
    created_by: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BlockEntryListResponse(BaseModel):
    total: int
    items: List[BlockEntryResponse]


# ===========================================================================
# Phones
# ===========================================================================
class PhoneNormalizeRequest(BaseModel):
    phone: str = Field(..., max_length=64)


class PhoneNormalizeResponse(BaseModel):
    input: str
    valid: bool
    canonical: Optional[str] = None
    operator_prefix: Optional[str] = None
    variants: List[str] = []
    reason: Optional[str] = None


class PhoneHistoryResponse(BaseModel):
    phone: str
    total_orders: int
    by_status: Dict[str, int]
    completed: int
    success_rate: float = Field(..., ge=0.0, le=100.0, description="Completed orders, percent")
    last_order_at: Optional[datetime] = None
    blocked: bool


# ===========================================================================
# Dashboard
# ===========================================================================
class BlockedAttemptResponse(BaseModel):
    id: str
    type: str
    phone: Optional[str]
    name: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    detail: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BlockedStats(BaseModel):
    period: Literal["week", "month"]
    days: int
    total: int
    by_type: Dict[str, int]
    by_day: Dict[str, int]


# ===========================================================================
# Health
# ===========================================================================
class HealthCheck(BaseModel):
    """Health check response."""
    status: str  # healthy | degraded | unhealthy
    db: str
    kafka: str
    uptime_seconds: float
    version: str


# ===========================================================================
# Authentication
# ===========================================================================
class TokenResponse(BaseModel):
    """JWT token response."""
    access_token: str = Field(..., description="Access token (JWT)")
    refresh_token: str = Field(..., description="Refresh token")
    token_type: str = Field(default="bearer")
    expires_in: int = Field(..., description="Token expiration in seconds")


class LoginRequest(BaseModel):
    username: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class AuthorizedUser(BaseModel):
    """Currently authenticated user info."""
    sub: str = Field(..., description="User subject/ID")
    scopes: List[str] = Field(..., description="User permissions")
    exp: Optional[Any] = None
