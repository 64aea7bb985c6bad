"""
Payment gateway adapter.

Both gateways end up in the same place: a GatewayTransactionResult. What
the browser brings back from the gateway is only ever a claim; a result is
``verified`` only when it comes from the server-side verification endpoint.
"""

import logging
from typing import Optional

from opentelemetry import trace

from booking_api import BookingApiClient
from exceptions import BookingApiError
from models import (
    GatewayTransactionResult,
    HostedCheckoutCallback,
    PaymentProvider,
    TokenRedirectCallback,
)

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"successful", "success", "completed"}


def is_successful_status(status: Optional[str]) -> bool:
    return str(status or "").strip().lower() in SUCCESS_STATUSES


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def callback_from_payload(payload: Optional[dict], provider_hint: Optional[str] = None):
    """Build a typed gateway callback from a raw return payload.

    Accepts the query string of the hosted-checkout return URL as well as
    the object the token-redirect popup hands back, including the nested
    ``data`` variants both gateways use. Returns None when the provider
    cannot be told.
    """
    if not payload:
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    status = _text(payload.get("status") or data.get("status"))
    reference = _text(payload.get("reference") or payload.get("trxref") or data.get("reference"))
    tx_ref = _text(
        payload.get("tx_ref") or payload.get("txRef") or data.get("tx_ref") or data.get("txRef")
    )
    transaction_id = _text(
        payload.get("transaction_id")
        or payload.get("transaction")
        or data.get("id")
        or data.get("transaction_id")
        or payload.get("id")
    )

    provider = str(payload.get("provider") or payload.get("gateway") or provider_hint or "").lower()
    if not provider:
        if tx_ref:
            provider = PaymentProvider.FLUTTERWAVE.value
        elif reference:
            provider = PaymentProvider.PAYSTACK.value

    if "flutter" in provider:
        return HostedCheckoutCallback(status=status, tx_ref=tx_ref or reference, transaction_id=transaction_id)
    if "paystack" in provider:
        return TokenRedirectCallback(status=status, reference=reference or tx_ref, transaction_id=transaction_id)
    return None


class PaymentGatewayAdapter:
    """Normalizes gateway callbacks and verification payloads."""

    def __init__(self, booking_api: BookingApiClient):
        self.booking_api = booking_api
        self.tracer = trace.get_tracer(__name__)

    @staticmethod
    def claimed_reference(callback) -> Optional[str]:
        if isinstance(callback, HostedCheckoutCallback):
            return _text(callback.tx_ref)
        return _text(callback.reference)

    @staticmethod
    def verification_key(callback) -> Optional[str]:
        """Identifier the verification endpoint is queried with."""
        if isinstance(callback, HostedCheckoutCallback):
            return _text(callback.transaction_id)
        # Token-redirect transactions are verified by their reference
        return _text(callback.reference) or _text(callback.transaction_id)

    def from_callback(self, callback) -> GatewayTransactionResult:
        """Unverified result describing what the redirect claims."""
        return GatewayTransactionResult(
            provider=PaymentProvider(callback.provider),
            status=callback.status or "",
            successful=is_successful_status(callback.status),
            reference=self.claimed_reference(callback),
            transaction_id=_text(callback.transaction_id),
            verified=False,
            raw=callback.model_dump(),
        )

    def from_verification(self, provider, payload, transaction_id: Optional[str] = None) -> GatewayTransactionResult:
        """Result built from the verification endpoint's answer."""
        payload = payload if isinstance(payload, dict) else {}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        ok = payload.get("ok") is True
        reference = _text(
            payload.get("tx_ref")
            or payload.get("reference")
            or data.get("tx_ref")
            or data.get("reference")
        )
        return GatewayTransactionResult(
            provider=PaymentProvider(provider),
            status=str(payload.get("status") or data.get("status") or ("successful" if ok else "")),
            successful=ok,
            reference=reference,
            transaction_id=_text(payload.get("transaction_id") or data.get("id")) or transaction_id,
            verified=ok,
            message=_text(payload.get("message")),
            raw=payload,
        )

    async def verify(self, callback, token: str) -> GatewayTransactionResult:
        """Ask the verification endpoint about the transaction behind ``callback``."""
        provider = PaymentProvider(callback.provider)
        key = self.verification_key(callback)
        with self.tracer.start_as_current_span("gateway.verify") as span:
            span.set_attribute("payment.provider", provider.value)
            try:
                payload = await self.booking_api.verify_transaction(provider.value, key, token)
            except BookingApiError as e:
                logger.warning(f"{provider.value} verification failed for {key}: {e}")
                span.set_attribute("error", True)
                span.set_attribute("error.message", str(e))
                return GatewayTransactionResult(
                    provider=provider,
                    transaction_id=key,
                    verified=False,
                    message=str(e),
                    raw=e.body,
                )
            result = self.from_verification(provider, payload, transaction_id=key)
            span.set_attribute("payment.verified", result.verified)
            return result
