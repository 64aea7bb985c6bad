from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class BookingStatus(str, Enum):
    """Booking lifecycle states."""
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PaymentProvider(str, Enum):
    """Supported payment gateways."""
    PAYSTACK = "paystack"  # token-redirect
    FLUTTERWAVE = "flutterwave"  # hosted checkout


class PagerMode(str, Enum):
    """Query strategy used by a search pager."""
    INDEXED = "indexed"
    FALLBACK = "fallback"


class Listing(BaseModel):
    """Listing as stored in the listings collection."""
    id: str
    title: str
    city: str
    area: str = ""
    description: str = ""
    price_per_night: float = Field(ge=0)
    status: str = "active"  # active, draft, suspended
    photos: list[str] = []
    host_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PricingBreakdown(BaseModel):
    """Price breakdown for a stay."""
    price_per_night: float = Field(ge=0)
    nights: int = Field(ge=0)
    subtotal: float = Field(ge=0)
    fee_pct: float = Field(ge=0)
    fee: float = Field(ge=0)
    total: float = Field(ge=0)


class Booking(BaseModel):
    """Booking record. Only status and payment metadata change after creation."""
    id: str
    listing_id: str
    guest_id: str
    listing_title: str = ""
    listing_city: str = ""
    listing_area: str = ""
    email: Optional[str] = None
    check_in: date
    check_out: date
    guests: int = Field(1, ge=1)
    price_per_night: float = Field(ge=0)
    nights: int = Field(ge=0)
    subtotal: float = Field(ge=0)
    fee_pct: float = Field(0, ge=0)
    fee: float = Field(ge=0)
    total: float = Field(ge=0)
    status: BookingStatus = BookingStatus.PENDING
    provider: Optional[PaymentProvider] = None
    # Reference issued by the latest checkout for this hold
    tx_ref: Optional[str] = None
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_amounts(self):
        expected_nights = max(0, (self.check_out - self.check_in).days)
        if self.nights != expected_nights:
            raise ValueError(f"nights must be {expected_nights} for the given dates")
        if abs(self.total - (self.subtotal + self.fee)) > 0.005:
            raise ValueError("total must equal subtotal + fee")
        if self.status in (BookingStatus.PAID, BookingStatus.CONFIRMED) and not self.reference:
            raise ValueError("a paid booking requires a gateway reference")
        return self


class ListingSnapshot(BaseModel):
    """Listing fields captured when checkout starts."""
    id: str
    title: str
    city: str = ""
    area: str = ""
    price_per_night: float = Field(ge=0)


class PendingReservationDraft(BaseModel):
    """Checkout snapshot held for a single confirmation render."""
    booking_id: str
    listing: ListingSnapshot
    check_in: date
    check_out: date
    guests: int = Field(ge=1)
    pricing: PricingBreakdown
    provider: PaymentProvider
    tx_ref: str


class TokenRedirectCallback(BaseModel):
    """Return payload of the token-redirect provider (Paystack)."""
    provider: Literal["paystack"] = "paystack"
    status: Optional[str] = None
    reference: Optional[str] = None
    transaction_id: Optional[str] = None


class HostedCheckoutCallback(BaseModel):
    """Return payload of the hosted-checkout provider (Flutterwave)."""
    provider: Literal["flutterwave"] = "flutterwave"
    status: Optional[str] = None
    tx_ref: Optional[str] = None
    transaction_id: Optional[str] = None


class GatewayTransactionResult(BaseModel):
    """Provider-independent view of a gateway transaction."""
    provider: PaymentProvider
    status: str = ""
    successful: bool = False
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    verified: bool = False
    message: Optional[str] = None
    raw: Optional[Any] = None


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation attempt."""
    verified: bool
    booking_ref: Optional[str] = None
    reference: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class BookingActionResult(BaseModel):
    """Outcome of a cancellation or refund request."""
    ok: bool
    booking_id: str
    status: Optional[BookingStatus] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class ListingSearchRequest(BaseModel):
    """Listing search filters."""
    query: str = ""
    city: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)

    @property
    def has_price_filter(self) -> bool:
        return self.min_price is not None or self.max_price is not None


class ListingPage(BaseModel):
    """One page of search results."""
    ok: bool = True
    items: list[Listing] = []
    has_more: bool = False
    mode: PagerMode = PagerMode.INDEXED
    notice: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    index_url: Optional[str] = None


class SearchPageResponse(ListingPage):
    """Search page returned over HTTP."""
    search_id: str
    skipped: bool = False


class CheckoutRequest(BaseModel):
    """Checkout start request."""
    listing_id: str
    check_in: date
    check_out: date
    guests: int = Field(1, ge=1, le=16)
    provider: Optional[PaymentProvider] = None


class CheckoutStart(BaseModel):
    """Checkout handle returned to the client before redirecting to the gateway."""
    session_id: str
    booking_id: str
    tx_ref: str
    provider: PaymentProvider
    amount: float
    currency: str
    expires_at: Optional[datetime] = None


class CheckoutOutcome(BaseModel):
    """Result of completing a checkout."""
    result: ReconcileResult
    draft: Optional[PendingReservationDraft] = None


class RefundRequest(BaseModel):
    """Refund request for admin/ops."""
    note: str = "manual_refund"
