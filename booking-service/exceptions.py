from typing import Optional


class BookingServiceError(Exception):
    """Base class for booking service errors."""


class InvalidTransitionError(BookingServiceError):
    """Raised when a booking status change is not allowed."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid booking transition: {current} -> {target}")
        self.current = current
        self.target = target


class DocumentNotFoundError(BookingServiceError):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"No document {collection}/{doc_id}")
        self.collection = collection
        self.doc_id = doc_id


class IndexRequiredError(BookingServiceError):
    """Raised when a query needs a composite index that does not exist."""

    def __init__(self, collection: str, fields: tuple, index_url: str):
        described = ", ".join(f"{name} {direction}" for name, direction in fields)
        super().__init__(
            f"The query requires an index on {collection} ({described}). "
            f"You can create it here: {index_url}"
        )
        self.collection = collection
        self.fields = fields
        self.index_url = index_url


class CheckoutError(BookingServiceError):
    """Raised when a checkout cannot be started."""

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class BookingApiError(BookingServiceError):
    """Raised when the Booking API answers with an error or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
