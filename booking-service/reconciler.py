"""
Booking reconciliation.

Turns a "the guest says they paid" redirect into a trustworthy booking
status. Every step runs in order and each is a precondition for the next:

    booking lookup -> gateway status -> transaction id -> id token
        -> server-side verification -> reference match -> persist

Verification is authoritative. The write that records it runs in the
background with retries, so a transient store failure never turns a
verified payment into a failure for the guest.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from opentelemetry import trace

from booking_api import BookingApiClient
from booking_state import assert_transition, can_transition, is_paid, is_terminal
from config import settings
from data import booking_id_from_reference, to_instant, utcnow
from gateways import PaymentGatewayAdapter
from identity import Identity
from models import Booking, BookingActionResult, BookingStatus, ReconcileResult
from store import InMemoryDocumentStore

logger = logging.getLogger(__name__)

BOOKINGS = "bookings"

MESSAGES = {
    "not_found": "We couldn't find this booking.",
    "invalid_state": "This booking can no longer be paid for.",
    "not_successful": "Payment not successful.",
    "missing_transaction_id": "Could not verify payment: missing transaction id.",
    "unauthenticated": "Please log in again to confirm your payment.",
    "verification_failed": "We couldn't verify this payment with the gateway.",
    "mismatch": "Payment reference mismatch.",
    "reference_conflict": "This booking was already paid with a different reference.",
    "duplicate_reference": "This payment is already attached to another booking.",
    "error": "We couldn't confirm your payment right now. Please try again or contact support.",
}


class BookingReconciler:
    """Owns booking status changes: payment reconciliation, cancellation, refunds and hold expiry."""

    def __init__(
        self,
        store: InMemoryDocumentStore,
        gateways: PaymentGatewayAdapter,
        booking_api: BookingApiClient,
        clock: Callable[[], datetime] = None,
        max_attempts: int = None,
        backoff_seconds: float = None,
        max_backoff_seconds: float = None,
    ):
        self.store = store
        self.gateways = gateways
        self.booking_api = booking_api
        self.clock = clock or utcnow
        self.max_attempts = max_attempts or settings.persist_max_attempts
        self.backoff_seconds = settings.persist_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds or settings.persist_backoff_max_seconds
        self.tracer = trace.get_tracer(__name__)
        # booking id -> verified reference whose write has not landed yet
        self._pending_writes: dict[str, str] = {}
        self._tasks: set = set()

    async def reconcile(self, booking_ref: Optional[str], callback, identity: Optional[Identity]) -> ReconcileResult:
        """Verify the payment behind ``callback`` and mark the booking paid."""
        with self.tracer.start_as_current_span("booking.reconcile") as span:
            span.set_attribute("booking.ref", booking_ref or "")
            span.set_attribute("payment.provider", callback.provider)
            try:
                result = await self._reconcile(booking_ref, callback, identity)
            except Exception as e:
                logger.exception(f"Unexpected error reconciling booking {booking_ref}: {e}")
                span.set_attribute("error", True)
                result = self._failure(booking_ref, "error")
            span.set_attribute("booking.verified", result.verified)
            if result.reason:
                span.set_attribute("booking.reconcile.reason", result.reason)
            return result

    async def _reconcile(self, booking_ref, callback, identity) -> ReconcileResult:
        booking = await self.load_booking(booking_ref)
        if booking is None:
            return self._failure(booking_ref, "not_found")
        if is_terminal(booking.status):
            return self._failure(booking.id, "invalid_state")

        claim = self.gateways.from_callback(callback)

        if claim.status and not claim.successful:
            return self._failure(booking.id, "not_successful")

        if not self.gateways.verification_key(callback):
            return self._failure(booking.id, "missing_transaction_id")

        token = await identity.get_id_token() if identity is not None else None
        if not token:
            return self._failure(booking.id, "unauthenticated")

        verified = await self.gateways.verify(callback, token)
        if not verified.verified:
            return self._failure(booking.id, "verification_failed", verified.message)

        reference = verified.reference
        if not reference or reference != claim.reference:
            logger.warning(
                f"Reference mismatch for booking {booking.id}: "
                f"redirect={claim.reference!r} verified={reference!r}"
            )
            return self._failure(booking.id, "mismatch")
        if not self.issued_for(booking, reference):
            logger.warning(f"Verified reference {reference!r} was not issued for booking {booking.id}")
            return self._failure(booking.id, "mismatch")

        if is_paid(booking.status):
            if booking.reference == reference:
                logger.info(f"Booking {booking.id} already paid with {reference}")
                return ReconcileResult(verified=True, booking_ref=booking.id, reference=reference)
            return self._failure(booking.id, "reference_conflict")

        holders = await self.store.query(BOOKINGS, filters=[("reference", "==", reference)], limit=2)
        if any(doc["id"] != booking.id for doc in holders):
            return self._failure(booking.id, "duplicate_reference")
        if holders:
            # Recorded by a concurrent reconcile while we were verifying
            return ReconcileResult(verified=True, booking_ref=booking.id, reference=reference)

        # No await between this check and scheduling the write
        in_flight = self._pending_writes.get(booking.id)
        if in_flight is not None:
            if in_flight == reference:
                return ReconcileResult(verified=True, booking_ref=booking.id, reference=reference)
            return self._failure(booking.id, "reference_conflict")

        now = self.clock()
        self._schedule_write(booking.id, reference, {
            "status": BookingStatus.PAID.value,
            "provider": verified.provider.value,
            "reference": reference,
            "transaction_id": verified.transaction_id,
            "gateway": "success",
            "paid_at": now,
            "updated_at": now,
        })
        logger.info(f"Payment verified for booking {booking.id}: {verified.provider.value} {reference}")
        return ReconcileResult(verified=True, booking_ref=booking.id, reference=reference)

    @staticmethod
    def issued_for(booking: Booking, reference: str) -> bool:
        """Whether ``reference`` was handed out for this booking.

        That is the reference stored by its latest checkout, or any
        ``NESTA_{booking id}_{millis}`` reference. A gateway reference the
        booking never stored (a Paystack-generated one, say) is not accepted.
        """
        if booking.tx_ref and reference == booking.tx_ref:
            return True
        return booking_id_from_reference(reference) == booking.id

    def _failure(self, booking_ref, reason: str, detail: Optional[str] = None) -> ReconcileResult:
        logger.info(f"Reconciliation of booking {booking_ref} failed: {reason}")
        return ReconcileResult(
            verified=False,
            booking_ref=booking_ref,
            reason=reason,
            message=MESSAGES[reason] if not detail else f"{MESSAGES[reason]} ({detail})",
        )

    def _schedule_write(self, booking_id: str, reference: str, fields: dict):
        self._pending_writes[booking_id] = reference
        task = asyncio.create_task(self._persist_payment(booking_id, reference, fields))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist_payment(self, booking_id: str, reference: str, fields: dict) -> bool:
        delay = self.backoff_seconds
        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    current = await self.store.get(BOOKINGS, booking_id)
                    status = current.get("status") if current else None
                    if status is not None and is_paid(status) and current.get("reference") == reference:
                        return True
                    if status is not None and not can_transition(status, BookingStatus.PAID):
                        # Cancelled or expired while we were verifying
                        logger.error(
                            f"Verified payment {reference} for booking {booking_id} "
                            f"not recorded: booking is {status}, needs review"
                        )
                        return False
                    await self.store.update(BOOKINGS, booking_id, fields)
                    logger.info(f"Booking {booking_id} marked paid (attempt {attempt})")
                    return True
                except Exception as e:
                    if attempt == self.max_attempts:
                        logger.error(
                            f"Giving up recording payment {reference} for booking {booking_id} "
                            f"after {attempt} attempts: {e}"
                        )
                        return False
                    logger.warning(f"Recording payment for booking {booking_id} failed (attempt {attempt}): {e}")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.max_backoff_seconds)
        finally:
            self._pending_writes.pop(booking_id, None)
        return False

    async def drain(self):
        """Wait for background writes scheduled so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def load_booking(self, booking_ref: Optional[str]) -> Optional[Booking]:
        """Resolve a booking from its id, or from a reference that embeds it.

        Bookings missing from the store are fetched from the Booking API
        and cached in the store.
        """
        if not booking_ref:
            return None
        booking_id = booking_id_from_reference(booking_ref) or booking_ref
        document = await self.store.get(BOOKINGS, booking_ref)
        if document is None and booking_id != booking_ref:
            document = await self.store.get(BOOKINGS, booking_id)
        if document is not None:
            return Booking.model_validate(document)

        remote = await self.booking_api.get_booking(booking_id)
        if not isinstance(remote, dict):
            return None
        try:
            booking = Booking.model_validate(remote.get("booking", remote))
        except ValueError as e:
            logger.warning(f"Booking API returned an unusable record for {booking_id}: {e}")
            return None
        await self.store.set(BOOKINGS, booking.id, booking.model_dump())
        logger.info(f"Booking {booking.id} loaded from the Booking API")
        return booking

    async def cancel(self, booking_id: str, identity: Optional[Identity] = None) -> BookingActionResult:
        """Cancel a booking, optimistically, rolling back if the Booking API refuses."""
        with self.tracer.start_as_current_span("booking.cancel") as span:
            span.set_attribute("booking.id", booking_id)
            try:
                return await self._cancel(booking_id, identity)
            except Exception as e:
                logger.exception(f"Unexpected error cancelling booking {booking_id}: {e}")
                span.set_attribute("error", True)
                return BookingActionResult(
                    ok=False, booking_id=booking_id, reason="error",
                    message="Couldn't cancel booking. Please try again.",
                )

    async def _cancel(self, booking_id, identity) -> BookingActionResult:
        booking = await self.load_booking(booking_id)
        if booking is None:
            return BookingActionResult(ok=False, booking_id=booking_id, reason="not_found",
                                       message="Booking not found.")
        booking_id = booking.id

        if booking.status == BookingStatus.CANCELLED:
            return BookingActionResult(ok=False, booking_id=booking_id, status=booking.status,
                                       reason="already_cancelled", message="This booking is already cancelled.")
        if booking.check_out < self.clock().date():
            return BookingActionResult(ok=False, booking_id=booking_id, status=booking.status,
                                       reason="stay_completed", message="Completed stays can't be cancelled.")
        if not can_transition(booking.status, BookingStatus.CANCELLED):
            return BookingActionResult(ok=False, booking_id=booking_id, status=booking.status,
                                       reason="invalid_state",
                                       message=f"A {booking.status.value} booking can't be cancelled.")

        prior = {
            "status": booking.status.value,
            "gateway": booking.gateway,
            "cancelled_at": booking.cancelled_at,
            "updated_at": booking.updated_at,
        }
        now = self.clock()
        await self.store.update(BOOKINGS, booking_id, {
            "status": BookingStatus.CANCELLED.value,
            "gateway": "cancelled",
            "cancelled_at": now,
            "updated_at": now,
        })

        try:
            token = await identity.get_id_token() if identity is not None else None
            await self.booking_api.cancel_booking(booking_id, token=token)
        except Exception as e:
            logger.error(f"Cancellation request for booking {booking_id} failed, rolling back: {e}")
            await self.store.update(BOOKINGS, booking_id, prior)
            return BookingActionResult(ok=False, booking_id=booking_id, status=booking.status,
                                       reason="request_failed",
                                       message="Couldn't cancel booking. Please try again.")

        logger.info(f"Booking {booking_id} cancelled (was {booking.status.value})")
        return BookingActionResult(ok=True, booking_id=booking_id, status=BookingStatus.CANCELLED)

    async def refund(
        self,
        booking_id: str,
        note: str = "manual_refund",
        identity: Optional[Identity] = None,
    ) -> BookingActionResult:
        """Mark a paid booking refunded after the money went back (admin/ops)."""
        booking = await self.load_booking(booking_id)
        if booking is None:
            return BookingActionResult(ok=False, booking_id=booking_id, reason="not_found",
                                       message="Booking not found.")
        booking_id = booking.id
        if not can_transition(booking.status, BookingStatus.REFUNDED):
            return BookingActionResult(ok=False, booking_id=booking_id, status=booking.status,
                                       reason="invalid_state",
                                       message=f"A {booking.status.value} booking can't be refunded.")
        now = self.clock()
        await self.store.update(BOOKINGS, booking_id, {
            "status": BookingStatus.REFUNDED.value,
            "gateway": note,
            "refunded_at": now,
            "updated_at": now,
        })
        actor = identity.current_user if identity is not None else None
        logger.info(f"Booking {booking_id} refunded ({note}) by {actor or 'unknown'}")
        return BookingActionResult(ok=True, booking_id=booking_id, status=BookingStatus.REFUNDED)

    async def expire_stale_holds(self, now: datetime = None) -> list[str]:
        """Expire pending bookings whose hold has run out."""
        now = now or self.clock()
        expired = []
        documents = await self.store.query(BOOKINGS, filters=[("status", "==", BookingStatus.PENDING.value)])
        for document in documents:
            if document["id"] in self._pending_writes:
                continue
            expires_at = to_instant(document.get("expires_at"))
            if expires_at is None or expires_at >= now:
                continue
            assert_transition(document["status"], BookingStatus.EXPIRED)
            await self.store.update(BOOKINGS, document["id"], {
                "status": BookingStatus.EXPIRED.value,
                "gateway": "timeout",
                "updated_at": now,
            })
            expired.append(document["id"])
        if expired:
            logger.info(f"Expired {len(expired)} stale booking holds")
        return expired
