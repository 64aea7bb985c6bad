import os

# Must be set before config.settings is first imported
os.environ.setdefault("FLIPT_ENABLED", "false")
os.environ.setdefault("TELEMETRY_ENABLED", "false")

from datetime import date, datetime, timezone

import httpx
import pytest

from booking_api import BookingApiClient
from gateways import PaymentGatewayAdapter
from identity import Identity
from models import Booking
from reconciler import BOOKINGS, BookingReconciler
from store import InMemoryDocumentStore

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


def make_booking(**overrides) -> dict:
    """Booking document for a 3-night stay at 30,000 a night, issued reference ref_9."""
    fields = dict(
        id="bk_1",
        listing_id="lst-4",
        guest_id="guest-1",
        check_in=date(2025, 6, 1),
        check_out=date(2025, 6, 4),
        guests=2,
        price_per_night=30000,
        nights=3,
        subtotal=90000,
        fee_pct=5,
        fee=4500,
        total=94500,
        status="pending",
        tx_ref="ref_9",
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Booking(**fields).model_dump()


class FakeBookingApi:
    """Stands in for the Booking API behind an httpx.MockTransport."""

    def __init__(self):
        self.bookings = {}
        self.verify_responses = {}
        self.verify_requests = []
        self.cancel_requests = []
        self.cancel_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/verify"):
            self.verify_requests.append(request)
            key = request.url.params.get("transactionId")
            if key not in self.verify_responses:
                return httpx.Response(404, json={"error": "Transaction not found"})
            return httpx.Response(200, json=self.verify_responses[key])
        if path.endswith("/cancel"):
            self.cancel_requests.append(request)
            if self.cancel_status >= 400:
                return httpx.Response(self.cancel_status, json={"error": "Cancellation refused"})
            return httpx.Response(200, json={"ok": True})
        if "/bookings/" in path:
            booking_id = path.rsplit("/", 1)[-1]
            if booking_id in self.bookings:
                return httpx.Response(200, json=self.bookings[booking_id])
            return httpx.Response(404, json={"error": "Booking not found"})
        return httpx.Response(404)


class FakeFlags:
    def __init__(self, index_fallback: bool = True, provider: str = "flutterwave"):
        self.index_fallback = index_fallback
        self.provider = provider
        self.client = None

    def is_index_fallback_enabled(self, entity_id, context=None):
        return self.index_fallback

    def get_checkout_provider(self, entity_id, context=None):
        return self.provider


@pytest.fixture
def fake_api():
    return FakeBookingApi()


@pytest.fixture
async def booking_api(fake_api):
    client = BookingApiClient(
        base_url="http://booking-api.test/api",
        transport=httpx.MockTransport(fake_api.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def identity():
    return Identity(uid="guest-1", token="id-token-1", email="guest@example.com")


@pytest.fixture
def store():
    return InMemoryDocumentStore(index_console_url="https://console.test/indexes")


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def reconciler(store, booking_api, clock):
    return BookingReconciler(
        store,
        PaymentGatewayAdapter(booking_api),
        booking_api,
        clock=clock,
        max_attempts=3,
        backoff_seconds=0,
        max_backoff_seconds=0.01,
    )


@pytest.fixture
def pending_booking(store):
    document = make_booking()
    store.load(BOOKINGS, [document])
    return document
