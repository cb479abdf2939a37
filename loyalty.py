"""Saldo de puntos de fidelidad.

Solo hay abonos: los puntos desbloquean coches y promociones, no se gastan.
"""
from sqlalchemy.orm import Session

import errors
from models import User

def credit(db: Session, user_id: int, amount: int) -> None:
    """Suma puntos dentro de la transacción del llamador (no hace commit)."""
    if amount < 0:
        raise ValueError("points can only be credited")
    updated = db.query(User).filter(User.id == user_id).update(
        {User.points: User.points + amount}, synchronize_session=False
    )
    if not updated:
        raise errors.NotFound("User not found")

def balance(db: Session, user_id: int) -> int:
    points = db.query(User.points).filter(User.id == user_id).scalar()
    if points is None:
        raise errors.NotFound("User not found")
    return int(points)
