"""Cálculo de precios de alquiler.

Funciones puras: no tocan la base de datos ni el reloj, ``now`` siempre llega
como argumento.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from config import OVERTIME_FEE_PER_HOUR


@dataclass(frozen=True)
class Quote:
    base_price: float
    chauffeur_fee: float
    discount_amount: float
    total_price: float

    @property
    def subtotal(self) -> float:
        return self.base_price + self.chauffeur_fee


def utcnow() -> datetime:
    """Hora actual en UTC sin tzinfo, igual que se guarda en la base de datos."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Las fechas se guardan en UTC sin zona horaria
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def base_price(price_per_hour: float, duration_hours: int) -> float:
    return round(price_per_hour * duration_hours, 2)


def chauffeur_fee(fee_per_hour: float, duration_hours: int, rental_type: str) -> float:
    if rental_type != "chauffeured":
        return 0.0
    return round((fee_per_hour or 0) * duration_hours, 2)


def quote(price_per_hour: float, chauffeur_fee_per_hour: float, duration_hours: int,
          rental_type: str, discount: float = 0.0) -> Quote:
    """Precio de una reserva antes de la devolución.

    El descuento nunca supera ``base_price + chauffeur_fee``.
    """
    if duration_hours < 1:
        raise ValueError("duration_hours must be at least 1")

    base = base_price(price_per_hour, duration_hours)
    chauffeur = chauffeur_fee(chauffeur_fee_per_hour, duration_hours, rental_type)
    subtotal = base + chauffeur
    discount_amount = round(min(max(discount, 0.0), subtotal), 2)

    return Quote(
        base_price=base,
        chauffeur_fee=chauffeur,
        discount_amount=discount_amount,
        total_price=round(subtotal - discount_amount, 2),
    )


def overtime_hours(expected_end: datetime, now: datetime) -> int:
    """Horas de retraso, redondeadas hacia arriba.

    Cualquier minuto extra cuenta como una hora completa; los segundos sueltos
    no cuentan.
    """
    if now <= expected_end:
        return 0

    minutes_late = int((now - expected_end).total_seconds() // 60)
    hours, minutes = divmod(minutes_late, 60)
    if minutes > 0:
        hours += 1
    return hours


def overtime_fee(hours: int, rate: float = OVERTIME_FEE_PER_HOUR) -> float:
    return round(hours * rate, 2)


def final_total(base: float, chauffeur: float, overtime: float, discount: float) -> float:
    return round(base + chauffeur + overtime - discount, 2)
