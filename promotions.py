"""Validación de códigos promocionales y cálculo del descuento.

``validate`` y ``preview`` nunca tocan ``usage_count``; solo ``redeem`` lo
incrementa y solo lo llama la creación de un alquiler.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import errors
from models import Promo


def find_by_code(db: Session, code: str, active_only: bool = True) -> Optional[Promo]:
    query = db.query(Promo).filter(func.upper(Promo.code) == code.strip().upper())
    if active_only:
        query = query.filter(Promo.is_active.is_(True))
    return query.first()


def validate(db: Session, code: str, user_points: int, rental_hours: int,
             car_category: str, now: datetime) -> Promo:
    """Comprueba el código en orden y se detiene en el primer fallo."""
    promo = find_by_code(db, code)
    if promo is None:
        raise errors.PromoRejected("Invalid promo code")

    if now < promo.valid_from:
        raise errors.PromoRejected("Promo code is not yet valid")

    if now > promo.valid_until:
        raise errors.PromoRejected("Promo code has expired")

    if promo.usage_limit is not None and promo.usage_count >= promo.usage_limit:
        raise errors.PromoRejected("Promo code usage limit reached")

    if user_points < promo.min_points_required:
        raise errors.PromoRejected(
            f"You need {promo.min_points_required} points to use this promo"
        )

    if rental_hours < promo.min_rental_hours:
        raise errors.PromoRejected(
            f"Minimum rental of {promo.min_rental_hours} hours required"
        )

    categories = promo.applicable_categories or []
    if categories and car_category not in categories:
        raise errors.PromoRejected("Promo code not applicable for this car category")

    return promo


def calculate_discount(promo: Promo, amount: float) -> float:
    if promo.discount_type == "percentage":
        discount = amount * (promo.discount_value / 100)
        if promo.max_discount is not None and discount > promo.max_discount:
            discount = promo.max_discount
    else:
        discount = promo.discount_value

    # Nunca más que el importe al que se aplica
    return round(min(discount, amount), 2)


def preview(db: Session, code: str, user_points: int, rental_hours: int,
            car_category: str, amount: float, now: datetime):
    promo = validate(db, code, user_points, rental_hours, car_category, now)
    return promo, calculate_discount(promo, amount)


def redeem(db: Session, promo: Promo) -> None:
    """Incrementa el uso dentro de la transacción de creación del alquiler.

    El UPDATE condicional vuelve a comprobar el límite para que dos reservas
    simultáneas no superen ``usage_limit``.
    """
    updated = (
        db.query(Promo)
        .filter(
            Promo.id == promo.id,
            or_(Promo.usage_limit.is_(None), Promo.usage_count < Promo.usage_limit),
        )
        .update({Promo.usage_count: Promo.usage_count + 1}, synchronize_session=False)
    )
    if not updated:
        raise errors.PromoRejected("Promo code usage limit reached")


def list_active(db: Session, now: datetime) -> List[Promo]:
    return (
        db.query(Promo)
        .filter(Promo.is_active.is_(True), Promo.valid_from <= now, Promo.valid_until >= now)
        .order_by(Promo.min_points_required, Promo.discount_value.desc())
        .all()
    )


def list_eligible(db: Session, user_points: int, now: datetime) -> List[Promo]:
    return (
        db.query(Promo)
        .filter(
            Promo.is_active.is_(True),
            Promo.valid_from <= now,
            Promo.valid_until >= now,
            Promo.min_points_required <= user_points,
            or_(Promo.usage_limit.is_(None), Promo.usage_count < Promo.usage_limit),
        )
        .order_by(Promo.discount_value.desc())
        .all()
    )
