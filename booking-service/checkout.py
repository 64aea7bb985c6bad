"""
Checkout flow: pending holds, the single-use checkout draft, and the
hand-off from the gateway's return URL to the reconciler.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from data import (
    booking_id_from_reference,
    calculate_nights,
    calculate_pricing,
    generate_booking_id,
    generate_tx_ref,
    to_instant,
    utcnow,
)
from exceptions import CheckoutError
from flags import FeatureFlags, feature_flags
from gateways import PaymentGatewayAdapter, callback_from_payload
from identity import Identity
from models import (
    Booking,
    BookingStatus,
    CheckoutOutcome,
    CheckoutRequest,
    CheckoutStart,
    Listing,
    ListingSnapshot,
    PaymentProvider,
    PendingReservationDraft,
    ReconcileResult,
)
from reconciler import BOOKINGS, MESSAGES, BookingReconciler
from search import LISTINGS

logger = logging.getLogger(__name__)


class PendingCheckout:
    """A checkout draft that can be taken exactly once."""

    def __init__(self, draft: PendingReservationDraft):
        self._draft = draft

    @property
    def consumed(self) -> bool:
        return self._draft is None

    def take(self) -> Optional[PendingReservationDraft]:
        draft, self._draft = self._draft, None
        return draft


class CheckoutSessions:
    """Session-scoped slots for the pending checkout and the gateway return payload.

    Both are read once and then dropped so nothing leaks into a later,
    unrelated checkout. Sessions left open longer than ``ttl`` (abandoned
    at the gateway, usually) are evicted whenever a new one is opened.
    """

    def __init__(self, ttl: timedelta = None, clock: Callable[[], datetime] = None):
        self.ttl = ttl or timedelta(minutes=settings.hold_ttl_minutes)
        self.clock = clock or utcnow
        # session id -> (opened at, pending checkout)
        self._pending: dict[str, tuple[datetime, PendingCheckout]] = {}
        self._callbacks: dict[str, dict] = {}

    def open(self, draft: PendingReservationDraft) -> str:
        self.evict_expired()
        session_id = uuid.uuid4().hex
        self._pending[session_id] = (self.clock(), PendingCheckout(draft))
        return session_id

    def evict_expired(self) -> int:
        """Drop sessions opened more than ``ttl`` ago, with any payload they hold."""
        cutoff = self.clock() - self.ttl
        stale = [session_id for session_id, (opened_at, _) in self._pending.items() if opened_at <= cutoff]
        for session_id in stale:
            del self._pending[session_id]
            self._callbacks.pop(session_id, None)
        if stale:
            logger.info(f"Evicted {len(stale)} abandoned checkout sessions")
        return len(stale)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._pending or session_id in self._callbacks

    def put_callback(self, session_id: str, payload: dict) -> bool:
        if session_id not in self._pending:
            return False
        self._callbacks[session_id] = dict(payload)
        return True

    def take(self, session_id: str) -> tuple[Optional[PendingReservationDraft], Optional[dict]]:
        entry = self._pending.pop(session_id, None)
        callback = self._callbacks.pop(session_id, None)
        return (entry[1].take() if entry else None), callback


class CheckoutService:
    """Starts checkouts and completes them through the reconciler."""

    def __init__(
        self,
        store,
        reconciler: BookingReconciler,
        sessions: CheckoutSessions = None,
        flags: FeatureFlags = None,
        clock: Callable[[], datetime] = None,
        fee_pct: float = None,
        hold_ttl_minutes: int = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.flags = flags or feature_flags
        self.clock = clock or utcnow
        self.fee_pct = settings.service_fee_pct if fee_pct is None else fee_pct
        self.hold_ttl = timedelta(minutes=hold_ttl_minutes or settings.hold_ttl_minutes)
        if sessions is None:
            sessions = CheckoutSessions(ttl=self.hold_ttl, clock=self.clock)
        self.sessions = sessions

    async def start(self, identity: Identity, request: CheckoutRequest) -> CheckoutStart:
        """Create (or reuse) a pending hold and open a checkout session."""
        if not identity.current_user:
            raise CheckoutError("Please log in to reserve.", "unauthenticated")
        if request.check_in >= request.check_out:
            raise CheckoutError("Select valid dates (check-in before check-out).", "invalid_dates")

        document = await self.store.get(LISTINGS, request.listing_id)
        if document is None:
            raise CheckoutError("Listing not found.", "not_found")
        listing = Listing.model_validate(document)
        if listing.status != "active":
            raise CheckoutError("This listing is not available for booking.", "unavailable")

        provider = request.provider or PaymentProvider(
            self.flags.get_checkout_provider(identity.current_user, {"city": listing.city})
        )
        booking = await self.ensure_pending_hold(identity, listing, request)
        tx_ref = generate_tx_ref(booking.id)
        await self.store.update(BOOKINGS, booking.id, {"tx_ref": tx_ref, "updated_at": self.clock()})

        draft = PendingReservationDraft(
            booking_id=booking.id,
            listing=ListingSnapshot(
                id=listing.id,
                title=listing.title,
                city=listing.city,
                area=listing.area,
                price_per_night=listing.price_per_night,
            ),
            check_in=booking.check_in,
            check_out=booking.check_out,
            guests=booking.guests,
            pricing=calculate_pricing(booking.price_per_night, booking.nights, booking.fee_pct),
            provider=provider,
            tx_ref=tx_ref,
        )
        session_id = self.sessions.open(draft)
        logger.info(f"Checkout {session_id} opened for booking {booking.id} via {provider.value}")

        return CheckoutStart(
            session_id=session_id,
            booking_id=booking.id,
            tx_ref=tx_ref,
            provider=provider,
            amount=booking.total,
            currency=settings.currency,
            expires_at=booking.expires_at,
        )

    async def ensure_pending_hold(self, identity: Identity, listing: Listing, request: CheckoutRequest) -> Booking:
        """Reuse the guest's latest unexpired hold for these dates, or create one."""
        now = self.clock()
        documents = await self.store.query(BOOKINGS, filters=[
            ("guest_id", "==", identity.current_user),
            ("listing_id", "==", listing.id),
            ("status", "==", BookingStatus.PENDING.value),
        ])
        holds = [
            Booking.model_validate(doc) for doc in documents
            if (to_instant(doc.get("expires_at")) or now) > now
        ]
        holds = [
            hold for hold in holds
            if hold.check_in == request.check_in and hold.check_out == request.check_out
            and hold.guests == request.guests
        ]
        if holds:
            hold = max(holds, key=lambda b: to_instant(b.created_at) or now)
            logger.info(f"Reusing pending hold {hold.id} for guest {identity.current_user}")
            return hold

        nights = calculate_nights(request.check_in, request.check_out)
        pricing = calculate_pricing(listing.price_per_night, nights, self.fee_pct)
        booking = Booking(
            id=generate_booking_id(),
            listing_id=listing.id,
            guest_id=identity.current_user,
            listing_title=listing.title,
            listing_city=listing.city,
            listing_area=listing.area,
            email=identity.email,
            check_in=request.check_in,
            check_out=request.check_out,
            guests=request.guests,
            price_per_night=listing.price_per_night,
            nights=nights,
            subtotal=pricing.subtotal,
            fee_pct=pricing.fee_pct,
            fee=pricing.fee,
            total=pricing.total,
            status=BookingStatus.PENDING,
            expires_at=now + self.hold_ttl,
            created_at=now,
            updated_at=now,
        )
        await self.store.add(BOOKINGS, booking.model_dump())
        logger.info(f"Pending hold {booking.id} created for listing {listing.id}")
        return booking

    def record_callback(self, session_id: str, payload: dict) -> bool:
        """Keep the gateway's return payload until the checkout is completed."""
        stored = self.sessions.put_callback(session_id, payload)
        if not stored:
            logger.warning(f"Gateway return for unknown checkout {session_id}")
        return stored

    async def complete(self, session_id: str, identity: Identity, payload: dict = None) -> CheckoutOutcome:
        """Consume the checkout and reconcile the payment it claims."""
        draft, stored = self.sessions.take(session_id)
        raw = payload or stored
        if draft is None and raw is None:
            return CheckoutOutcome(result=ReconcileResult(
                verified=False,
                reason="no_pending_checkout",
                message="We couldn't find your booking details. Please select a listing again.",
            ))

        callback = callback_from_payload(raw, provider_hint=draft.provider.value if draft else None)
        if callback is None:
            return CheckoutOutcome(draft=draft, result=ReconcileResult(
                verified=False,
                booking_ref=draft.booking_id if draft else None,
                reason="missing_callback",
                message="We didn't receive a payment confirmation from the gateway.",
            ))

        claimed = PaymentGatewayAdapter.claimed_reference(callback)
        if draft is not None and claimed != draft.tx_ref:
            logger.warning(
                f"Checkout {session_id} returned reference {claimed!r}, "
                f"expected {draft.tx_ref!r} for booking {draft.booking_id}"
            )
            return CheckoutOutcome(draft=draft, result=ReconcileResult(
                verified=False,
                booking_ref=draft.booking_id,
                reason="mismatch",
                message=MESSAGES["mismatch"],
            ))

        booking_ref = draft.booking_id if draft else booking_id_from_reference(claimed)
        result = await self.reconciler.reconcile(booking_ref, callback, identity)
        return CheckoutOutcome(result=result, draft=draft)
