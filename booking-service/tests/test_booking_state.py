import pytest

from booking_state import assert_transition, can_transition, is_paid, is_terminal
from exceptions import InvalidTransitionError
from models import BookingStatus


@pytest.mark.parametrize("current, target", [
    ("pending", "paid"),
    ("pending", "cancelled"),
    ("pending", "expired"),
    ("paid", "confirmed"),
    ("paid", "cancelled"),
    ("paid", "refunded"),
    ("confirmed", "refunded"),
])
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize("current, target", [
    ("pending", "refunded"),
    ("pending", "confirmed"),
    ("paid", "pending"),
    ("cancelled", "paid"),
    ("cancelled", "refunded"),
    ("refunded", "paid"),
    ("expired", "paid"),
])
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as exc:
        assert_transition(current, target)
    assert exc.value.current == current
    assert exc.value.target == target


def test_terminal_and_paid_sets():
    assert {s for s in BookingStatus if is_terminal(s)} == {
        BookingStatus.CANCELLED, BookingStatus.REFUNDED, BookingStatus.EXPIRED,
    }
    assert is_paid("paid") and is_paid(BookingStatus.CONFIRMED)
    assert not is_paid("pending")
