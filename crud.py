from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import errors
import events
import pricing
import schemas
from auth import Principal, get_password_hash, verify_password
from database import transaction
from models import Car, Payment, Promo, Rating, Rental, User

# Operaciones de usuario
def create_user(db: Session, user: schemas.UserCreate, role: str = "user"):
    if get_user_by_email(db, user.email):
        raise errors.Conflict("Email already registered")
    db_user = User(
        email=user.email,
        hashed_password=get_password_hash(user.password),
        full_name=user.full_name,
        phone=user.phone,
        role=role,
    )
    try:
        with transaction(db):
            db.add(db_user)
    except errors.InternalError as exc:
        if isinstance(exc.__cause__, IntegrityError):
            raise errors.Conflict("Email already registered") from exc
        raise
    db.refresh(db_user)
    events.emit("user_registered", user_id=db_user.id, email=db_user.email)
    return db_user

def get_user(db: Session, user_id: int):
    return db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()

def get_user_by_email(db: Session, email: str):
    return db.query(User).filter(func.lower(User.email) == email.lower()).first()

def authenticate_user(db: Session, email: str, password: str):
    user = get_user_by_email(db, email)
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user

def update_user(db: Session, user_id: int, changes: schemas.UserUpdate):
    db_user = get_user(db, user_id)
    if db_user is None:
        raise errors.NotFound("User not found")
    data = changes.model_dump(exclude_unset=True, exclude_none=True)
    password = data.pop("password", None)
    with transaction(db):
        for field, value in data.items():
            setattr(db_user, field, value)
        if password:
            db_user.hashed_password = get_password_hash(password)
    db.refresh(db_user)
    return db_user

def get_users(db: Session, skip: int = 0, limit: int = 100):
    return db.query(User).order_by(User.created_at.desc(), User.id.desc()).offset(skip).limit(limit).all()

# Operaciones de coches
def _plate_taken(db: Session, plate_number: str, car_id: Optional[int] = None):
    query = db.query(Car).filter(Car.plate_number == plate_number)
    if car_id is not None:
        query = query.filter(Car.id != car_id)
    return query.first() is not None

def _is_plate_conflict(exc: errors.InternalError):
    return isinstance(exc.__cause__, IntegrityError) and "plate_number" in str(exc.__cause__.orig)

def create_car(db: Session, car: schemas.CarBase):
    if _plate_taken(db, car.plate_number):
        raise errors.Conflict("Plate number already exists")
    db_car = Car(**car.model_dump())
    try:
        with transaction(db):
            db.add(db_car)
    except errors.InternalError as exc:
        if _is_plate_conflict(exc):
            raise errors.Conflict("Plate number already exists") from exc
        raise
    db.refresh(db_car)
    return db_car

def get_car(db: Session, car_id: int):
    return db.query(Car).filter(Car.id == car_id).first()

def get_car_or_404(db: Session, car_id: int):
    db_car = get_car(db, car_id)
    if db_car is None:
        raise errors.NotFound("Car not found")
    return db_car

def get_cars(db: Session):
    return db.query(Car).order_by(Car.category, Car.make, Car.model).all()

def update_car(db: Session, car_id: int, changes: schemas.CarUpdate):
    """El flag ``is_rented`` no se toca aquí: solo lo cambia el ciclo de alquiler."""
    db_car = get_car_or_404(db, car_id)
    data = changes.model_dump(exclude_unset=True, exclude_none=True)
    if "plate_number" in data and _plate_taken(db, data["plate_number"], car_id):
        raise errors.Conflict("Plate number already exists")
    try:
        with transaction(db):
            for field, value in data.items():
                setattr(db_car, field, value)
    except errors.InternalError as exc:
        if _is_plate_conflict(exc):
            raise errors.Conflict("Plate number already exists") from exc
        raise
    db.refresh(db_car)
    return db_car

def delete_car(db: Session, car_id: int):
    db_car = get_car_or_404(db, car_id)
    open_rentals = db.query(Rental).filter(
        Rental.car_id == car_id,
        Rental.status.in_(("pending", "confirmed", "active"))
    ).count()
    if open_rentals:
        raise errors.Conflict("Car has open rentals and cannot be deleted")
    if db.query(Rental).filter(Rental.car_id == car_id).count():
        # Con historial de alquileres solo se retira del catálogo
        with transaction(db):
            db_car.is_available = False
        return False
    with transaction(db):
        db.delete(db_car)
    return True

def _bookable(query):
    return query.filter(Car.is_available.is_(True), Car.is_rented.is_(False))

def get_available_cars(db: Session):
    return _bookable(db.query(Car)).order_by(Car.required_points, Car.price_per_hour).all()

def get_cars_for_points(db: Session, points: int):
    """Coches reservables cuyo requisito de puntos ya cumple el usuario."""
    return _bookable(db.query(Car)).filter(
        Car.required_points <= points
    ).order_by(Car.required_points, Car.price_per_hour).all()

def get_locked_cars(db: Session, points: int) -> List[schemas.LockedCar]:
    cars = db.query(Car).filter(
        Car.is_available.is_(True),
        Car.required_points > points
    ).order_by(Car.required_points).all()
    return [
        schemas.LockedCar(**schemas.Car.model_validate(c).model_dump(), points_needed=c.required_points - points)
        for c in cars
    ]

def get_cars_by_category(db: Session, category: str):
    return db.query(Car).filter(
        Car.category == category,
        Car.is_available.is_(True)
    ).order_by(Car.price_per_hour).all()

# Operaciones de promociones
def _check_promo_rules(discount_type, discount_value, valid_from, valid_until):
    if valid_until <= valid_from:
        raise errors.ValidationError("Validation failed", {"valid_until": "Must be after valid_from"})
    if discount_type == "percentage" and discount_value > 100:
        raise errors.ValidationError("Validation failed", {"discount_value": "Percentage cannot exceed 100"})

def create_promo(db: Session, promo: schemas.PromoBase):
    _check_promo_rules(promo.discount_type, promo.discount_value, promo.valid_from, promo.valid_until)
    db_promo = Promo(**promo.model_dump())
    try:
        with transaction(db):
            db.add(db_promo)
    except errors.InternalError as exc:
        if isinstance(exc.__cause__, IntegrityError):
            raise errors.Conflict("Promo code already exists") from exc
        raise
    db.refresh(db_promo)
    return db_promo

def get_promo(db: Session, promo_id: int):
    db_promo = db.query(Promo).filter(Promo.id == promo_id).first()
    if db_promo is None:
        raise errors.NotFound("Promo not found")
    return db_promo

def get_promos(db: Session):
    return db.query(Promo).order_by(Promo.valid_until.desc()).all()

def update_promo(db: Session, promo_id: int, changes: schemas.PromoUpdate):
    """Edita una promoción; ``usage_count`` no es editable."""
    db_promo = get_promo(db, promo_id)
    data = changes.model_dump(exclude_unset=True, exclude_none=True)
    _check_promo_rules(
        data.get("discount_type", db_promo.discount_type),
        data.get("discount_value", db_promo.discount_value),
        data.get("valid_from", db_promo.valid_from),
        data.get("valid_until", db_promo.valid_until),
    )
    if "usage_limit" in data and data["usage_limit"] < db_promo.usage_count:
        raise errors.ValidationError(
            "Validation failed",
            {"usage_limit": f"Cannot be lower than current usage ({db_promo.usage_count})"},
        )
    with transaction(db):
        for field, value in data.items():
            setattr(db_promo, field, value)
    db.refresh(db_promo)
    return db_promo

def deactivate_promo(db: Session, promo_id: int):
    db_promo = get_promo(db, promo_id)
    with transaction(db):
        db_promo.is_active = False
    db.refresh(db_promo)
    return db_promo

# Operaciones de valoraciones
def create_rating(db: Session, rating: schemas.RatingCreate, principal: Principal):
    rental = db.query(Rental).filter(Rental.id == rating.rental_id).first()
    if rental is None:
        raise errors.NotFound("Rental not found")
    if rental.user_id != principal.user_id:
        raise errors.Forbidden("You can only rate your own rentals")
    if rental.status != "completed":
        raise errors.BadRequest("You can only rate completed rentals")
    if db.query(Rating).filter(Rating.rental_id == rental.id).first():
        raise errors.Conflict("You have already rated this rental")

    db_rating = Rating(
        user_id=principal.user_id,
        rental_id=rental.id,
        car_id=rental.car_id,
        car_rating=rating.car_rating,
        service_rating=rating.service_rating,
        comment=rating.comment,
    )
    try:
        with transaction(db):
            db.add(db_rating)
    except errors.InternalError as exc:
        # Dos envíos a la vez: el índice único en rental_id decide
        if isinstance(exc.__cause__, IntegrityError):
            raise errors.Conflict("You have already rated this rental") from exc
        raise
    db.refresh(db_rating)
    events.emit("rating_created", rating_id=db_rating.id, rental_id=rental.id, user_id=principal.user_id)
    return db_rating

def get_rating(db: Session, rating_id: int):
    db_rating = db.query(Rating).filter(Rating.id == rating_id).first()
    if db_rating is None:
        raise errors.NotFound("Rating not found")
    return db_rating

def get_car_ratings(db: Session, car_id: int):
    return db.query(Rating).filter(
        Rating.car_id == car_id,
        Rating.is_approved.is_(True)
    ).order_by(Rating.created_at.desc(), Rating.id.desc()).all()

def get_car_rating_averages(db: Session, car_id: int) -> schemas.RatingAverages:
    avg_car, avg_service, total = db.query(
        func.avg(Rating.car_rating),
        func.avg(Rating.service_rating),
        func.count(Rating.id)
    ).filter(Rating.car_id == car_id, Rating.is_approved.is_(True)).one()
    return schemas.RatingAverages(
        avg_car_rating=round(float(avg_car), 1) if avg_car is not None else None,
        avg_service_rating=round(float(avg_service), 1) if avg_service is not None else None,
        total_ratings=total,
    )

def get_user_ratings(db: Session, user_id: int):
    return db.query(Rating).filter(Rating.user_id == user_id).order_by(Rating.created_at.desc()).all()

def update_rating(db: Session, rating_id: int, changes: schemas.RatingUpdate, principal: Principal):
    db_rating = get_rating(db, rating_id)
    if db_rating.user_id != principal.user_id:
        raise errors.Forbidden("You can only edit your own ratings")
    with transaction(db):
        for field, value in changes.model_dump(exclude_unset=True).items():
            setattr(db_rating, field, value)
    db.refresh(db_rating)
    return db_rating

def delete_rating(db: Session, rating_id: int, principal: Principal):
    db_rating = get_rating(db, rating_id)
    if not principal.can_access(db_rating.user_id):
        raise errors.Forbidden("You can only delete your own ratings")
    with transaction(db):
        db.delete(db_rating)

def set_rating_approved(db: Session, rating_id: int, approved: bool):
    db_rating = get_rating(db, rating_id)
    with transaction(db):
        db_rating.is_approved = approved
    db.refresh(db_rating)
    return db_rating

# Estadísticas del panel de administración
def _sum(db: Session, column, *criteria):
    return float(db.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar())

def get_dashboard(db: Session, now: Optional[datetime] = None):
    now = now or pricing.utcnow()
    completed = Rental.status == "completed"

    rental_stats = {
        "total_rentals": db.query(Rental).count(),
        "active_rentals": db.query(Rental).filter(Rental.status == "active").count(),
        "completed_rentals": db.query(Rental).filter(completed).count(),
        "total_revenue": _sum(db, Rental.total_price, completed),
        "overtime_collected": _sum(db, Rental.overtime_fee, completed),
        "overdue_rentals": db.query(Rental).filter(
            Rental.status == "active", Rental.expected_end_time < now
        ).count(),
    }

    by_type = db.query(
        Payment.payment_type, func.count(Payment.id), func.sum(Payment.amount)
    ).filter(Payment.is_received.is_(True)).group_by(Payment.payment_type).all()
    payment_stats = {
        "total_received": _sum(db, Payment.amount, Payment.is_received.is_(True)),
        "total_pending": _sum(db, Payment.amount, Payment.is_received.is_(False)),
        "by_type": [
            {"payment_type": kind, "count": count, "total": float(total or 0)}
            for kind, count, total in by_type
        ],
    }

    avg_car, avg_service, total_ratings = db.query(
        func.avg(Rating.car_rating), func.avg(Rating.service_rating), func.count(Rating.id)
    ).filter(Rating.is_approved.is_(True)).one()

    return {
        "users": {"total": db.query(User).count()},
        "cars": {
            "total": db.query(Car).count(),
            "available": _bookable(db.query(Car)).count(),
        },
        "rentals": rental_stats,
        "payments": payment_stats,
        "ratings": {
            "total": total_ratings,
            "avg_car_rating": round(float(avg_car), 2) if avg_car is not None else None,
            "avg_service_rating": round(float(avg_service), 2) if avg_service is not None else None,
        },
    }
