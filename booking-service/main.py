import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from telemetry import setup_telemetry
from models import (
    Booking,
    BookingActionResult,
    CheckoutOutcome,
    CheckoutRequest,
    CheckoutStart,
    ListingSearchRequest,
    RefundRequest,
    SearchPageResponse,
)
from data import get_all_listings, utcnow
from exceptions import BookingApiError, CheckoutError
from booking_api import BookingApiClient
from checkout import CheckoutService
from flags import feature_flags
from gateways import PaymentGatewayAdapter
from identity import Identity, get_identity, require_identity
from reconciler import BookingReconciler
from search import LISTINGS, ListingSearchPager, SearchSessions
from store import InMemoryDocumentStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Booking Service API",
    description="Listing search, checkout and payment reconciliation for short-stay bookings",
    version=settings.service_version,
    docs_url="/",
    redoc_url=None,
)

# Setup CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup OpenTelemetry
tracer, meter = setup_telemetry(app)

# Create custom metrics
search_counter = meter.create_counter(
    name="listing_searches_total",
    description="Total number of listing search pages served",
    unit="1",
)

reconcile_counter = meter.create_counter(
    name="booking_reconciliations_total",
    description="Total number of payment reconciliation attempts",
    unit="1",
)

cancel_counter = meter.create_counter(
    name="booking_cancellations_total",
    description="Total number of cancellation requests",
    unit="1",
)

# Collaborators
# Only the browse index exists; price-filtered searches run on the fallback scan
store = InMemoryDocumentStore(indexes=[
    (LISTINGS, [("status", "asc"), ("updated_at", "desc")]),
])
store.load(LISTINGS, get_all_listings())
booking_api = BookingApiClient()
gateway_adapter = PaymentGatewayAdapter(booking_api)
reconciler = BookingReconciler(store, gateway_adapter, booking_api)
checkout_service = CheckoutService(store, reconciler, flags=feature_flags)

# Open search pagers, keyed by search id
search_sessions = SearchSessions()

CHECKOUT_ERROR_STATUS = {
    "unauthenticated": 401,
    "not_found": 404,
    "invalid_dates": 400,
    "unavailable": 409,
}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "flipt_connected": feature_flags.client is not None,
    }


@app.post("/api/listings/search", response_model=SearchPageResponse)
async def search_listings(
    search: ListingSearchRequest,
    entity_id: str = Query("anonymous", description="User/entity ID for feature flags"),
):
    """
    Open a search and return its first page.
    Follow-up pages come from /api/listings/search/{search_id}/more.
    """
    with tracer.start_as_current_span("search_listings") as span:
        span.set_attribute("entity_id", entity_id)

        pager = ListingSearchPager(store, search, flags=feature_flags, entity_id=entity_id)
        search_id = search_sessions.open(pager)

        page = await pager.load_more()
        search_counter.add(1, {"mode": page.mode.value, "ok": str(page.ok)})

        logger.info(
            f"Search {search_id} opened: {len(page.items)} results, "
            f"mode={page.mode.value}, has_more={page.has_more}"
        )
        return SearchPageResponse(search_id=search_id, **page.model_dump())


@app.post("/api/listings/search/{search_id}/more", response_model=SearchPageResponse)
async def search_listings_more(search_id: str):
    """Load the next page of an open search. A request made while one is in flight is skipped."""
    pager = search_sessions.get(search_id)
    if pager is None:
        raise HTTPException(status_code=404, detail="Search not found")

    page = await pager.load_more()
    if page is None:
        return SearchPageResponse(
            search_id=search_id,
            has_more=pager.has_more,
            mode=pager.mode,
            notice=pager.notice,
            skipped=True,
        )

    search_counter.add(1, {"mode": page.mode.value, "ok": str(page.ok)})
    if not pager.has_more:
        search_sessions.drop(search_id)
    return SearchPageResponse(search_id=search_id, **page.model_dump())


@app.get("/api/bookings/{booking_id}", response_model=Booking)
async def get_booking(booking_id: str):
    """Get a specific booking by ID."""
    with tracer.start_as_current_span("get_booking") as span:
        span.set_attribute("booking_id", booking_id)

        try:
            booking = await reconciler.load_booking(booking_id)
        except BookingApiError as e:
            span.set_attribute("error", True)
            raise HTTPException(status_code=502, detail=str(e))
        if booking is None:
            span.set_attribute("found", False)
            raise HTTPException(status_code=404, detail="Booking not found")

        span.set_attribute("found", True)
        span.set_attribute("booking.status", booking.status.value)
        return booking


@app.post("/api/bookings/expire-stale")
async def expire_stale_bookings(identity: Identity = Depends(require_identity)):
    """Expire pending holds whose TTL has passed."""
    expired = await reconciler.expire_stale_holds(utcnow())
    logger.info(f"Stale hold sweep by {identity.current_user}: {len(expired)} expired")
    return {"expired": expired, "total": len(expired)}


@app.post("/api/bookings/{booking_id}/cancel", response_model=BookingActionResult)
async def cancel_booking(booking_id: str, identity: Identity = Depends(require_identity)):
    """Cancel a booking (guest- or host-initiated)."""
    result = await reconciler.cancel(booking_id, identity)
    cancel_counter.add(1, {"ok": str(result.ok), "reason": result.reason or "none"})
    if result.reason == "not_found":
        raise HTTPException(status_code=404, detail="Booking not found")
    return result


@app.post("/api/bookings/{booking_id}/refund", response_model=BookingActionResult)
async def refund_booking(
    booking_id: str,
    refund: Optional[RefundRequest] = None,
    identity: Identity = Depends(require_identity),
):
    """Mark a paid booking refunded."""
    result = await reconciler.refund(booking_id, (refund or RefundRequest()).note, identity)
    if result.reason == "not_found":
        raise HTTPException(status_code=404, detail="Booking not found")
    return result


@app.post("/api/checkout", response_model=CheckoutStart)
async def start_checkout(checkout: CheckoutRequest, identity: Identity = Depends(get_identity)):
    """Place a pending hold and return what the client needs to open the gateway."""
    with tracer.start_as_current_span("start_checkout") as span:
        span.set_attribute("listing_id", checkout.listing_id)
        try:
            started = await checkout_service.start(identity, checkout)
        except CheckoutError as e:
            raise HTTPException(status_code=CHECKOUT_ERROR_STATUS.get(e.reason, 400), detail=str(e))
        span.set_attribute("booking_id", started.booking_id)
        span.set_attribute("payment.provider", started.provider.value)
        return started


@app.get("/api/checkout/{session_id}/return")
async def checkout_return(session_id: str, request: Request):
    """Gateway return URL. Keeps the query string for the completion step."""
    stored = checkout_service.record_callback(session_id, dict(request.query_params))
    if not stored:
        raise HTTPException(status_code=404, detail="Checkout not found")
    return {"session_id": session_id, "received": True}


@app.post("/api/checkout/{session_id}/complete", response_model=CheckoutOutcome)
async def complete_checkout(
    session_id: str,
    payload: Optional[dict] = None,
    identity: Identity = Depends(get_identity),
):
    """Consume the checkout and reconcile its payment."""
    with tracer.start_as_current_span("complete_checkout") as span:
        span.set_attribute("session_id", session_id)
        outcome = await checkout_service.complete(session_id, identity, payload)
        result = outcome.result

        reconcile_counter.add(1, {
            "verified": str(result.verified),
            "reason": result.reason or "none",
        })
        logger.info(
            f"Checkout {session_id} completed: booking={result.booking_ref}, "
            f"verified={result.verified}, reason={result.reason}"
        )
        return outcome


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
