from datetime import timedelta

import pytest

import errors
import payments
import rentals
from tests.helpers import NOW, principal


@pytest.fixture
def rental(db, renter, car):
    return rentals.create(db, principal(renter), car_id=car.id, rental_type="chauffeured",
                          start_time=NOW, duration_hours=3, now=NOW)


def _pay(db, renter, admin, rental, amount, now=NOW):
    payment = payments.record(db, principal(renter), rental.id, "cash", amount)
    return payments.confirm(db, payment.id, principal(admin), now=now)


def test_recorded_payment_starts_unreceived(db, renter, rental):
    payment = payments.record(db, principal(renter), rental.id, "gcash", 1000, reference_number="GC-1")

    db.refresh(rental)
    assert payment.is_received is False
    assert payment.reference_number == "GC-1"
    assert rental.status == "pending"
    assert payments.total_received(db, rental.id) == 0


def test_partial_then_full_payment_confirms_rental(db, renter, admin, rental):
    first = _pay(db, renter, admin, rental, 1000)

    assert first.total_paid == 1000
    assert first.total_due == 1800
    assert first.is_fully_paid is False
    assert first.rental_status == "pending"

    second = _pay(db, renter, admin, rental, 800)

    db.refresh(rental)
    assert second.total_paid == 1800
    assert second.is_fully_paid is True
    assert second.rental_status == "confirmed"
    assert rental.status == "confirmed"


def test_confirmation_records_admin_and_time(db, renter, admin, rental):
    payment = payments.record(db, principal(renter), rental.id, "cash", 500)

    payments.confirm(db, payment.id, principal(admin), now=NOW)

    db.refresh(payment)
    assert payment.is_received is True
    assert payment.received_by == admin.id
    assert payment.received_at == NOW


def test_payment_cannot_be_confirmed_twice(db, renter, admin, rental):
    payment = payments.record(db, principal(renter), rental.id, "cash", 500)
    payments.confirm(db, payment.id, principal(admin), now=NOW)

    with pytest.raises(errors.Conflict):
        payments.confirm(db, payment.id, principal(admin), now=NOW)

    assert payments.total_received(db, rental.id) == 500


def test_unreceived_payments_do_not_count(db, renter, admin, rental):
    payments.record(db, principal(renter), rental.id, "cash", 1800)

    assert payments.total_received(db, rental.id) == 0
    db.refresh(rental)
    assert rental.status == "pending"


def test_full_payment_on_active_rental_keeps_status(db, renter, admin, rental):
    rentals.release_key(db, rental.id, principal(admin), now=NOW)

    result = _pay(db, renter, admin, rental, 1800)

    assert result.is_fully_paid is True
    assert result.rental_status == "active"


def test_overdue_active_rental_owes_running_overtime(db, renter, admin, rental):
    rentals.release_key(db, rental.id, principal(admin), now=NOW)
    late = rental.expected_end_time + timedelta(minutes=30)

    result = _pay(db, renter, admin, rental, 1800, now=late)

    assert result.total_due == 2000
    assert result.is_fully_paid is False


def test_cannot_pay_for_cancelled_rental(db, renter, rental):
    rentals.cancel(db, rental.id, principal(renter))

    with pytest.raises(errors.BadRequest):
        payments.record(db, principal(renter), rental.id, "cash", 1800)


def test_cannot_pay_for_someone_elses_rental(db, make_user, rental):
    with pytest.raises(errors.Forbidden):
        payments.record(db, principal(make_user()), rental.id, "cash", 100)


def test_missing_rental_or_payment(db, renter, admin):
    with pytest.raises(errors.NotFound):
        payments.record(db, principal(renter), 404, "cash", 100)
    with pytest.raises(errors.NotFound):
        payments.confirm(db, 404, principal(admin), now=NOW)


def test_summary_reports_balance(db, renter, admin, rental):
    _pay(db, renter, admin, rental, 1000)
    payments.record(db, principal(renter), rental.id, "cash", 300)

    summary = payments.summary_for_rental(db, rental.id, principal(renter), NOW)

    assert len(summary.payments) == 2
    assert summary.total_paid == 1000
    assert summary.total_due == 1800
    assert summary.balance == 800


def test_pending_list_only_has_unreceived(db, renter, admin, rental):
    _pay(db, renter, admin, rental, 1000)
    waiting = payments.record(db, principal(renter), rental.id, "cash", 800)

    assert [p.id for p in payments.list_pending(db)] == [waiting.id]
