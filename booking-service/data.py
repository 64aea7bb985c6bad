from collections.abc import Mapping
from datetime import date, datetime, timezone
import math
import re
import time
import uuid
from typing import Optional, Union

from models import Listing, PricingBreakdown


# Sample listing data
LISTINGS = [
    Listing(
        id="lst-1",
        title="Lekki Phase 1 Ocean View Apartment",
        city="Lagos",
        area="Lekki Phase 1",
        description="Two-bedroom serviced apartment with 24/7 power and sea views.",
        price_per_night=45000,
        photos=["https://images.unsplash.com/photo-1502672260266-1c1ef2d93688?w=800"],
        host_id="host-1",
        created_at=datetime(2025, 3, 2, 9, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 5, 20, 14, 30, tzinfo=timezone.utc),
    ),
    Listing(
        id="lst-2",
        title="Ikoyi Penthouse Suite",
        city="Lagos",
        area="Ikoyi",
        description="Rooftop penthouse with private terrace, close to Falomo bridge.",
        price_per_night=120000,
        photos=["https://images.unsplash.com/photo-1522708323590-d24dbb6b0267?w=800"],
        host_id="host-2",
        created_at=datetime(2025, 2, 14, 10, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 5, 28, 8, 15, tzinfo=timezone.utc),
    ),
    Listing(
        id="lst-3",
        title="Maitama Garden Retreat",
        city="Abuja",
        area="Maitama",
        description="Quiet three-bedroom home with garden, minutes from the city centre.",
        price_per_night=65000,
        photos=["https://images.unsplash.com/photo-1560448204-e02f11c3d0e2?w=800"],
        host_id="host-3",
        created_at=datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 4, 2, 17, 45, tzinfo=timezone.utc),
    ),
    Listing(
        id="lst-4",
        title="Wuse II Business Studio",
        city="FCT Abuja",
        area="Wuse II",
        description="Compact studio for business travellers with fast Wi-Fi.",
        price_per_night=30000,
        photos=["https://images.unsplash.com/photo-1505691938895-1758d7feb511?w=800"],
        host_id="host-3",
        created_at=datetime(2025, 4, 18, 7, 30, tzinfo=timezone.utc),
        updated_at=datetime(2025, 6, 1, 11, 0, tzinfo=timezone.utc),
    ),
    Listing(
        id="lst-5",
        title="GRA Guest House",
        city="Port Harcourt",
        area="GRA Phase 2",
        description="Guest house with secure parking and breakfast included.",
        price_per_night=28000,
        photos=["https://images.unsplash.com/photo-1566073771259-6a8506099945?w=800"],
        host_id="host-4",
        created_at=datetime(2025, 3, 22, 16, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 5, 5, 9, 20, tzinfo=timezone.utc),
    ),
    # Import artifact of lst-5
    Listing(
        id="lst-5-dup",
        title="GRA Guest House ",
        city="port harcourt",
        area="GRA Phase 2",
        description="Guest house with secure parking and breakfast included.",
        price_per_night=28000,
        photos=["https://images.unsplash.com/photo-1566073771259-6a8506099945?w=800&dup=1"],
        host_id="host-4",
        created_at=datetime(2025, 3, 22, 16, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 5, 5, 9, 20, tzinfo=timezone.utc),
    ),
    Listing(
        id="lst-6",
        title="Victoria Island Loft",
        city="Lagos",
        area="Victoria Island",
        description="Draft loft listing awaiting photos.",
        price_per_night=80000,
        status="draft",
        host_id="host-2",
        created_at=datetime(2025, 6, 3, 8, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 6, 3, 8, 0, tzinfo=timezone.utc),
    ),
]

_REFERENCE_PATTERN = re.compile(r"^NESTA_(?P<booking_id>.+)_(?P<millis>\d+)$")

Instant = Union[datetime, date, int, float, str, Mapping, None]


def get_all_listings():
    """Get all seed listings as documents."""
    return [listing.model_dump() for listing in LISTINGS]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_instant(value: Instant) -> Optional[datetime]:
    """Convert a stored timestamp into an aware UTC datetime.

    Accepted shapes: datetime (naive values are taken as UTC), date
    (midnight UTC), epoch milliseconds, ISO-8601 strings (a trailing ``Z``
    is allowed) and ``{"seconds", "nanoseconds"}`` mappings as written by
    the document store. Anything else, or an unparsable value, gives None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_instant(parsed)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
            return None
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        return to_instant(seconds * 1000 + nanos // 1_000_000)
    return None


def calculate_nights(check_in, check_out) -> int:
    """Calculate number of nights between dates (never negative)."""
    start = to_instant(check_in)
    end = to_instant(check_out)
    if start is None or end is None:
        return 0
    return max(0, (end.date() - start.date()).days)


def calculate_pricing(price_per_night: float, nights: int, fee_pct: float) -> PricingBreakdown:
    """Calculate subtotal, service fee (whole currency units) and total."""
    subtotal = float(price_per_night) * nights
    fee = float(math.floor(subtotal * fee_pct / 100 + 0.5))
    return PricingBreakdown(
        price_per_night=price_per_night,
        nights=nights,
        subtotal=subtotal,
        fee_pct=fee_pct,
        fee=fee,
        total=subtotal + fee,
    )


def generate_booking_id():
    """Generate a unique booking ID."""
    return f"BK-{uuid.uuid4().hex[:8].upper()}"


def generate_tx_ref(booking_id: str) -> str:
    """Generate a gateway transaction reference that carries the booking id."""
    return f"NESTA_{booking_id}_{int(time.time() * 1000)}"


def booking_id_from_reference(reference: Optional[str]) -> Optional[str]:
    """Recover the booking id from a reference made by generate_tx_ref."""
    if not reference:
        return None
    match = _REFERENCE_PATTERN.match(reference.strip())
    return match.group("booking_id") if match else None
