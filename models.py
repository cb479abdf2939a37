from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from config import CAR_CATEGORIES, PAYMENT_TYPES, RENTAL_TYPES
from database import Base

RENTAL_STATUSES = ("pending", "confirmed", "active", "completed", "cancelled")

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(200), nullable=False)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(20))
    points = Column(Integer, default=0, nullable=False)
    role = Column(Enum("user", "admin", name="user_role"), default="user", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    rentals = relationship("Rental", back_populates="user")
    ratings = relationship("Rating", back_populates="user")

class Car(Base):
    __tablename__ = "cars"

    id = Column(Integer, primary_key=True, index=True)
    make = Column(String(50), nullable=False)
    model = Column(String(50), nullable=False)
    year = Column(Integer)
    plate_number = Column(String(20), unique=True, nullable=False)
    category = Column(Enum(*CAR_CATEGORIES, name="car_category"), default="standard", nullable=False)
    seats = Column(Integer)
    transmission = Column(String(20))
    fuel_type = Column(String(20))
    description = Column(Text)
    price_per_hour = Column(Float, nullable=False)
    chauffeur_fee = Column(Float, default=0, nullable=False)
    required_points = Column(Integer, default=0, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    is_rented = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    rentals = relationship("Rental", back_populates="car")
    ratings = relationship("Rating", back_populates="car")

    @property
    def is_bookable(self):
        return bool(self.is_available) and not self.is_rented

class Promo(Base):
    __tablename__ = "promos"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    discount_type = Column(Enum("percentage", "fixed", name="discount_type"), default="percentage", nullable=False)
    discount_value = Column(Float, nullable=False)
    max_discount = Column(Float)
    min_rental_hours = Column(Integer, default=1, nullable=False)
    min_points_required = Column(Integer, default=0, nullable=False)
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=False)
    usage_limit = Column(Integer)
    usage_count = Column(Integer, default=0, nullable=False)
    applicable_categories = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    rentals = relationship("Rental", back_populates="promo")

class Rental(Base):
    __tablename__ = "rentals"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False, index=True)
    rental_type = Column(Enum(*RENTAL_TYPES, name="rental_type"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    expected_end_time = Column(DateTime, nullable=False)
    actual_end_time = Column(DateTime)
    duration_hours = Column(Integer, nullable=False)
    base_price = Column(Float, nullable=False)
    chauffeur_fee = Column(Float, default=0, nullable=False)
    discount_amount = Column(Float, default=0, nullable=False)
    overtime_fee = Column(Float, default=0, nullable=False)
    total_price = Column(Float, nullable=False)
    promo_id = Column(Integer, ForeignKey("promos.id"))
    key_released = Column(Boolean, default=False, nullable=False)
    key_released_at = Column(DateTime)
    key_returned = Column(Boolean, default=False, nullable=False)
    key_returned_at = Column(DateTime)
    status = Column(Enum(*RENTAL_STATUSES, name="rental_status"), default="pending", nullable=False, index=True)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="rentals")
    car = relationship("Car", back_populates="rentals")
    promo = relationship("Promo", back_populates="rentals")
    payments = relationship("Payment", back_populates="rental")
    rating = relationship("Rating", back_populates="rental", uselist=False)

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    rental_id = Column(Integer, ForeignKey("rentals.id"), nullable=False, index=True)
    payment_type = Column(Enum(*PAYMENT_TYPES, name="payment_type"), nullable=False)
    amount = Column(Float, nullable=False)
    reference_number = Column(String(100))
    is_received = Column(Boolean, default=False, nullable=False)
    received_by = Column(Integer, ForeignKey("users.id"))
    received_at = Column(DateTime)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    rental = relationship("Rental", back_populates="payments")

class Rating(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rental_id = Column(Integer, ForeignKey("rentals.id"), unique=True, nullable=False)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False, index=True)
    car_rating = Column(Integer, nullable=False)
    service_rating = Column(Integer, nullable=False)
    comment = Column(Text)
    is_approved = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="ratings")
    rental = relationship("Rental", back_populates="rating")
    car = relationship("Car", back_populates="ratings")
