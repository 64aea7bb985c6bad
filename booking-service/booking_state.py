"""Booking state machine."""

from exceptions import InvalidTransitionError
from models import BookingStatus

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.PAID, BookingStatus.CANCELLED, BookingStatus.EXPIRED},
    BookingStatus.PAID: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.REFUNDED},
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED, BookingStatus.REFUNDED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.REFUNDED: set(),
    BookingStatus.EXPIRED: set(),
}

PAID_STATUSES = {BookingStatus.PAID, BookingStatus.CONFIRMED}
TERMINAL_STATUSES = {status for status, targets in BOOKING_TRANSITIONS.items() if not targets}


def can_transition(current, target) -> bool:
    return BookingStatus(target) in BOOKING_TRANSITIONS.get(BookingStatus(current), set())


def assert_transition(current, target) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(BookingStatus(current).value, BookingStatus(target).value)


def is_paid(status) -> bool:
    return BookingStatus(status) in PAID_STATUSES


def is_terminal(status) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES
