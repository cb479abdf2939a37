"""Registro y conciliación de pagos manuales (efectivo, transferencia...).

Un pago se crea sin recibir; un administrador lo marca como recibido una sola
vez. Cuando lo recibido cubre el total, el alquiler pasa de ``pending`` a
``confirmed``.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import errors
import events
import pricing
import rentals
import schemas
from auth import Principal
from database import transaction
from models import Payment, Rental


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if payment is None:
        raise errors.NotFound("Payment not found")
    return payment


def total_received(db: Session, rental_id: int) -> float:
    total = (
        db.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.rental_id == rental_id, Payment.is_received.is_(True))
        .scalar()
    )
    return float(total)


def record(db: Session, principal: Principal, rental_id: int, payment_type: str, amount: float,
           reference_number: Optional[str] = None, notes: Optional[str] = None) -> Payment:
    rental = rentals.get_rental(db, rental_id)
    if not principal.can_access(rental.user_id):
        raise errors.Forbidden("You can only pay for your own rentals")
    if rental.status == "cancelled":
        raise errors.BadRequest("Cannot pay for cancelled rental")

    payment = Payment(
        rental_id=rental_id,
        payment_type=payment_type,
        amount=amount,
        reference_number=reference_number,
        notes=notes,
        is_received=False,
    )
    with transaction(db):
        db.add(payment)

    db.refresh(payment)
    events.emit("payment_recorded", payment_id=payment.id, rental_id=rental_id,
                amount=amount, user_id=principal.user_id)
    return payment


def confirm(db: Session, payment_id: int, admin: Principal,
            now: Optional[datetime] = None) -> schemas.PaymentConfirmation:
    """Marca el pago como recibido y confirma el alquiler si ya está pagado."""
    now = now or pricing.utcnow()
    payment = get_payment(db, payment_id)
    if payment.is_received:
        raise errors.Conflict("Payment already confirmed")
    rental_id, amount = payment.rental_id, payment.amount

    with transaction(db):
        updated = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.is_received.is_(False))
            .update({Payment.is_received: True, Payment.received_by: admin.user_id,
                     Payment.received_at: now}, synchronize_session=False)
        )
        if not updated:
            raise errors.Conflict("Payment already confirmed")

        rental = rentals.get_rental(db, rental_id)
        db.refresh(rental)
        paid = total_received(db, rental_id)
        due = rentals.amount_due(rental, now)
        fully_paid = paid >= due
        confirmed = False
        if fully_paid and rental.status == "pending":
            confirmed = rentals.confirm(db, rental_id)
        rental_status = "confirmed" if confirmed else rental.status

    events.emit("payment_confirmed", payment_id=payment_id, rental_id=rental_id,
                amount=amount, admin_id=admin.user_id, total_paid=paid, total_due=due)
    if confirmed:
        events.emit("rental_confirmed", rental_id=rental_id, total_paid=paid)

    return schemas.PaymentConfirmation(
        payment_id=payment_id,
        is_received=True,
        total_paid=paid,
        total_due=due,
        is_fully_paid=fully_paid,
        rental_status=rental_status,
    )


# Consultas
def summary_for_rental(db: Session, rental_id: int, principal: Principal,
                       now: datetime) -> schemas.RentalPayments:
    rental = rentals.get_rental(db, rental_id)
    if not principal.can_access(rental.user_id):
        raise errors.Forbidden("You can only view payments for your own rentals")

    items = (
        db.query(Payment)
        .filter(Payment.rental_id == rental_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )
    paid = total_received(db, rental_id)
    due = rentals.amount_due(rental, now)
    return schemas.RentalPayments(
        payments=[schemas.Payment.model_validate(p) for p in items],
        total_paid=paid,
        total_due=due,
        balance=round(due - paid, 2),
    )


def list_for_user(db: Session, user_id: int) -> List[Payment]:
    return (
        db.query(Payment)
        .join(Rental, Payment.rental_id == Rental.id)
        .filter(Rental.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )


def list_pending(db: Session) -> List[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.is_received.is_(False))
        .order_by(Payment.created_at)
        .all()
    )


def list_all(db: Session, limit: int = 100, offset: int = 0) -> List[Payment]:
    return (
        db.query(Payment)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
