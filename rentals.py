"""Ciclo de vida de un alquiler.

    pending -> confirmed -> active -> completed
    pending | confirmed -> cancelled

Cada transición vuelve a comprobar el estado con un UPDATE condicional dentro
de la transacción, así dos peticiones simultáneas no pueden devolver ni
confirmar el mismo alquiler dos veces.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

import errors
import events
import loyalty
import pricing
import promotions
import schemas
from auth import Principal
from config import OVERTIME_FEE_PER_HOUR, POINTS_PER_RENTAL
from database import transaction
from models import Car, Rental

RELEASABLE = ("pending", "confirmed")
CANCELLABLE = ("pending", "confirmed")


def get_rental(db: Session, rental_id: int) -> Rental:
    rental = db.query(Rental).filter(Rental.id == rental_id).first()
    if rental is None:
        raise errors.NotFound("Rental not found")
    return rental


def _mark_car_rented(db: Session, car_id: int) -> None:
    updated = (
        db.query(Car)
        .filter(Car.id == car_id, Car.is_available.is_(True), Car.is_rented.is_(False))
        .update({Car.is_rented: True}, synchronize_session=False)
    )
    if not updated:
        raise errors.Conflict("Car is not available for rental")


def _release_car(db: Session, car_id: int) -> None:
    db.query(Car).filter(Car.id == car_id).update({Car.is_rented: False}, synchronize_session=False)


# Transiciones
def create(db: Session, principal: Principal, car_id: int, rental_type: str,
           start_time: datetime, duration_hours: int, promo_code: Optional[str] = None,
           notes: Optional[str] = None, now: Optional[datetime] = None) -> Rental:
    """Crea un alquiler en ``pending`` y marca el coche como alquilado."""
    now = now or pricing.utcnow()

    car = db.query(Car).filter(Car.id == car_id).first()
    if car is None:
        raise errors.NotFound("Car not found")
    if not car.is_bookable:
        raise errors.Conflict("Car is not available for rental")

    user_points = loyalty.balance(db, principal.user_id)
    if user_points < car.required_points:
        raise errors.Forbidden(
            f"You need {car.required_points} points to rent this car. You have {user_points} points."
        )

    promo = None
    discount = 0.0
    if promo_code:
        promo = promotions.validate(db, promo_code, user_points, duration_hours, car.category, now)
        undiscounted = pricing.quote(car.price_per_hour, car.chauffeur_fee, duration_hours, rental_type)
        discount = promotions.calculate_discount(promo, undiscounted.subtotal)

    quote = pricing.quote(car.price_per_hour, car.chauffeur_fee, duration_hours, rental_type, discount)
    start = pricing.to_naive_utc(start_time)

    rental = Rental(
        user_id=principal.user_id,
        car_id=car.id,
        rental_type=rental_type,
        start_time=start,
        expected_end_time=start + timedelta(hours=duration_hours),
        duration_hours=duration_hours,
        base_price=quote.base_price,
        chauffeur_fee=quote.chauffeur_fee,
        discount_amount=quote.discount_amount,
        overtime_fee=0,
        total_price=quote.total_price,
        promo_id=promo.id if promo is not None else None,
        status="pending",
        notes=notes,
    )

    with transaction(db):
        if promo is not None:
            promotions.redeem(db, promo)
        db.add(rental)
        _mark_car_rented(db, car.id)

    db.refresh(rental)
    events.emit("rental_created", rental_id=rental.id, user_id=principal.user_id,
                car_id=car.id, total_price=rental.total_price, promo_id=rental.promo_id)
    return rental


def confirm(db: Session, rental_id: int) -> bool:
    """pending -> confirmed. Lo dispara la conciliación de pagos, sin commit propio.

    Devuelve False si el alquiler ya no estaba en ``pending``.
    """
    updated = (
        db.query(Rental)
        .filter(Rental.id == rental_id, Rental.status == "pending")
        .update({Rental.status: "confirmed"}, synchronize_session=False)
    )
    return bool(updated)


def release_key(db: Session, rental_id: int, admin: Principal,
                now: Optional[datetime] = None) -> Rental:
    now = now or pricing.utcnow()
    rental = get_rental(db, rental_id)

    if rental.key_released:
        raise errors.Conflict("Key already released")
    if rental.status not in RELEASABLE:
        raise errors.BadRequest("Cannot release key for this rental status")

    with transaction(db):
        updated = (
            db.query(Rental)
            .filter(Rental.id == rental_id, Rental.key_released.is_(False),
                    Rental.status.in_(RELEASABLE))
            .update({Rental.status: "active", Rental.key_released: True,
                     Rental.key_released_at: now}, synchronize_session=False)
        )
        if not updated:
            raise errors.Conflict("Key already released")

    db.refresh(rental)
    events.emit("key_released", rental_id=rental.id, car_id=rental.car_id, admin_id=admin.user_id)
    return rental


def return_car(db: Session, rental_id: int, admin: Principal,
               now: Optional[datetime] = None) -> schemas.ReturnResult:
    """active -> completed: cierra el recargo por retraso, libera el coche y da puntos."""
    now = now or pricing.utcnow()
    rental = get_rental(db, rental_id)
    if rental.status != "active":
        raise errors.BadRequest("Only active rentals can be returned")

    hours = pricing.overtime_hours(rental.expected_end_time, now)
    overtime = pricing.overtime_fee(hours, OVERTIME_FEE_PER_HOUR)
    total = pricing.final_total(rental.base_price, rental.chauffeur_fee, overtime, rental.discount_amount)
    car_id, user_id = rental.car_id, rental.user_id

    with transaction(db):
        updated = (
            db.query(Rental)
            .filter(Rental.id == rental_id, Rental.status == "active")
            .update({
                Rental.status: "completed",
                Rental.actual_end_time: now,
                Rental.key_returned: True,
                Rental.key_returned_at: now,
                Rental.overtime_fee: overtime,
                Rental.total_price: total,
            }, synchronize_session=False)
        )
        if not updated:
            raise errors.BadRequest("Only active rentals can be returned")
        _release_car(db, car_id)
        loyalty.credit(db, user_id, POINTS_PER_RENTAL)

    events.emit("rental_returned", rental_id=rental_id, admin_id=admin.user_id,
                overtime_hours=hours, overtime_fee=overtime, total_price=total)
    return schemas.ReturnResult(
        rental_id=rental_id,
        overtime_hours=hours,
        overtime_fee=overtime,
        total_price=total,
        status="completed",
        points_earned=POINTS_PER_RENTAL,
    )


def cancel(db: Session, rental_id: int, principal: Principal) -> Rental:
    rental = get_rental(db, rental_id)
    if not principal.can_access(rental.user_id):
        raise errors.Forbidden("You can only cancel your own rentals")
    if rental.status not in CANCELLABLE:
        raise errors.BadRequest("Only pending or confirmed rentals can be cancelled")

    # El uso de la promoción no se devuelve al cancelar
    with transaction(db):
        updated = (
            db.query(Rental)
            .filter(Rental.id == rental_id, Rental.status.in_(CANCELLABLE))
            .update({Rental.status: "cancelled"}, synchronize_session=False)
        )
        if not updated:
            raise errors.BadRequest("Only pending or confirmed rentals can be cancelled")
        _release_car(db, rental.car_id)

    db.refresh(rental)
    events.emit("rental_cancelled", rental_id=rental_id, user_id=principal.user_id)
    return rental


# Proyección en vivo
def amount_due(rental: Rental, now: datetime) -> float:
    """Total que se debe ahora mismo, incluyendo el retraso acumulado si está activo."""
    if rental.status == "active" and rental.actual_end_time is None:
        hours = pricing.overtime_hours(rental.expected_end_time, now)
        if hours:
            return pricing.final_total(rental.base_price, rental.chauffeur_fee,
                                       pricing.overtime_fee(hours, OVERTIME_FEE_PER_HOUR),
                                       rental.discount_amount)
    return rental.total_price


def project(rental: Rental, now: datetime) -> schemas.Rental:
    view = schemas.Rental.model_validate(rental)
    if rental.status == "active" and rental.actual_end_time is None:
        hours = pricing.overtime_hours(rental.expected_end_time, now)
        view.overtime_hours = hours
        view.current_overtime = pricing.overtime_fee(hours, OVERTIME_FEE_PER_HOUR)
        view.current_total = amount_due(rental, now)
    return view


# Consultas
def get_for_principal(db: Session, rental_id: int, principal: Principal,
                      now: datetime) -> schemas.Rental:
    rental = get_rental(db, rental_id)
    if not principal.can_access(rental.user_id):
        raise errors.Forbidden("You can only view your own rentals")
    return project(rental, now)


def list_for_user(db: Session, user_id: int, now: datetime) -> List[schemas.Rental]:
    rentals = (
        db.query(Rental)
        .filter(Rental.user_id == user_id)
        .order_by(Rental.created_at.desc(), Rental.id.desc())
        .all()
    )
    return [project(r, now) for r in rentals]


def list_all(db: Session, now: datetime, page: int = 1,
             limit: int = 50) -> Tuple[List[schemas.Rental], int]:
    total = db.query(Rental).count()
    rentals = (
        db.query(Rental)
        .order_by(Rental.created_at.desc(), Rental.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return [project(r, now) for r in rentals], total


def list_active(db: Session, now: datetime) -> List[schemas.Rental]:
    rentals = (
        db.query(Rental)
        .filter(Rental.status == "active")
        .order_by(Rental.expected_end_time)
        .all()
    )
    return [project(r, now) for r in rentals]
