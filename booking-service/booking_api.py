import logging
from typing import Optional

import httpx
from opentelemetry import trace

from config import settings
from exceptions import BookingApiError

logger = logging.getLogger(__name__)


class BookingApiClient:
    """Client for the bookings/payments REST API."""

    def __init__(self, base_url: str = None, timeout: Optional[float] = None, transport=None):
        self.base_url = (base_url or settings.booking_api_url).rstrip("/")
        self.tracer = trace.get_tracer(__name__)
        # HTTPXClientInstrumentor propagates trace context on every request
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout if timeout is not None else settings.booking_api_timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def get_booking(self, booking_id: str) -> Optional[dict]:
        """GET /bookings/{id}; None when the API answers 404."""
        if not booking_id:
            raise ValueError("Missing booking id")
        try:
            return await self._request("GET", f"/bookings/{booking_id}")
        except BookingApiError as e:
            if e.status_code == 404:
                return None
            raise

    async def cancel_booking(self, booking_id: str, token: Optional[str] = None) -> dict:
        """POST /bookings/{id}/cancel."""
        if not booking_id:
            raise ValueError("Missing booking id")
        return await self._request("POST", f"/bookings/{booking_id}/cancel", token=token)

    async def verify_transaction(self, gateway: str, transaction_id: str, token: str) -> dict:
        """GET /{gateway}/verify?transactionId=... with the caller's bearer token."""
        with self.tracer.start_as_current_span("booking_api.verify") as span:
            span.set_attribute("payment.gateway", gateway)
            return await self._request(
                "GET",
                f"/{gateway}/verify",
                params={"transactionId": transaction_id},
                token=token,
            )

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, params: dict = None, token: str = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = await self._client.request(method, path, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Booking API {method} {path} failed: {e}")
            raise BookingApiError(f"Booking API unreachable: {e}") from e

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        if response.is_error:
            message = None
            if isinstance(data, dict):
                message = data.get("error") or data.get("message")
            elif isinstance(data, str) and data:
                message = data
            message = message or f"{response.status_code} {response.reason_phrase}"
            logger.warning(f"Booking API {method} {path} returned {response.status_code}: {message}")
            raise BookingApiError(message, status_code=response.status_code, body=data)
        return data
