from datetime import datetime
from typing import Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, EmailStr, Field, field_validator

from pricing import to_naive_utc

T = TypeVar("T")

Category = Literal["economy", "standard", "luxury", "premium"]
RentalType = Literal["self_drive", "chauffeured"]
PaymentType = Literal["cash", "credit_card", "debit_card", "gcash", "maya", "bank_transfer"]
DiscountType = Literal["percentage", "fixed"]

# Respuesta estándar
class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str = "Success"
    data: Optional[T] = None

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    errors: Optional[Dict[str, str]] = None

class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int
    pages: int

# Usuarios
def _check_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not any(c.isalpha() for c in value) or not any(c.isdigit() for c in value):
        raise ValueError("Password must contain letters and numbers")
    return value

def _check_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    digits = value.replace(" ", "").replace("-", "")
    if digits.startswith("+"):
        digits = digits[1:]
    if not digits.isdigit() or not 7 <= len(digits) <= 15:
        raise ValueError("Invalid phone number")
    return value

class UserBase(BaseModel):
    email: EmailStr
    full_name: str = Field(..., min_length=2, max_length=255)
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def phone_format(cls, value):
        return _check_phone(value)

class UserCreate(UserBase):
    password: str

    @field_validator("password")
    @classmethod
    def password_rules(cls, value):
        return _check_password(value)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = None
    password: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def phone_format(cls, value):
        return _check_phone(value)

    @field_validator("password")
    @classmethod
    def password_rules(cls, value):
        return value if value is None else _check_password(value)

class User(BaseModel):
    id: int
    email: EmailStr
    full_name: str
    phone: Optional[str] = None
    points: int
    role: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class AdminUser(User):
    is_active: bool

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

# Coches
class CarBase(BaseModel):
    make: str = Field(..., max_length=50)
    model: str = Field(..., max_length=50)
    year: int = Field(..., ge=1900, le=2100)
    plate_number: str = Field(..., max_length=20)
    category: Category = "standard"
    seats: Optional[int] = Field(None, ge=1)
    transmission: Optional[str] = None
    fuel_type: Optional[str] = None
    description: Optional[str] = None
    price_per_hour: float = Field(..., gt=0)
    chauffeur_fee: float = Field(0, ge=0)
    required_points: int = Field(0, ge=0)
    is_available: bool = True

class CarUpdate(BaseModel):
    make: Optional[str] = Field(None, max_length=50)
    model: Optional[str] = Field(None, max_length=50)
    year: Optional[int] = Field(None, ge=1900, le=2100)
    plate_number: Optional[str] = Field(None, max_length=20)
    category: Optional[Category] = None
    seats: Optional[int] = Field(None, ge=1)
    transmission: Optional[str] = None
    fuel_type: Optional[str] = None
    description: Optional[str] = None
    price_per_hour: Optional[float] = Field(None, gt=0)
    chauffeur_fee: Optional[float] = Field(None, ge=0)
    required_points: Optional[int] = Field(None, ge=0)
    is_available: Optional[bool] = None

class Car(CarBase):
    id: int
    is_rented: bool

    class Config:
        from_attributes = True

class LockedCar(Car):
    points_needed: int

class CarCatalog(BaseModel):
    available: List[Car]
    locked: List[LockedCar]
    user_points: int

class GuestCatalog(BaseModel):
    cars: List[Car]
    message: str = "Login to see cars available for your points level"

class UnlockedCars(BaseModel):
    user_points: int
    cars: List[Car]

class LockedCars(BaseModel):
    user_points: int
    cars: List[LockedCar]

class CategoryCars(BaseModel):
    category: str
    cars: List[Car]

class RatingAverages(BaseModel):
    avg_car_rating: Optional[float] = None
    avg_service_rating: Optional[float] = None
    total_ratings: int = 0

class CarDetail(BaseModel):
    car: Car
    averages: RatingAverages
    ratings: List["Rating"]
    can_rent: bool
    points_needed: int

class LoginResult(BaseModel):
    user: User
    token: str
    cars: CarCatalog

class Registration(BaseModel):
    user_id: int
    email: EmailStr
    token: str

# Promociones
class PromoBase(BaseModel):
    code: str = Field(..., min_length=2, max_length=50)
    name: str = Field(..., max_length=100)
    description: Optional[str] = None
    discount_type: DiscountType = "percentage"
    discount_value: float = Field(..., gt=0)
    max_discount: Optional[float] = Field(None, gt=0)
    min_rental_hours: int = Field(1, ge=1)
    min_points_required: int = Field(0, ge=0)
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    applicable_categories: List[Category] = []

    @field_validator("code")
    @classmethod
    def upper_code(cls, value):
        return value.strip().upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def utc_dates(cls, value):
        return to_naive_utc(value)

class PromoUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, gt=0)
    max_discount: Optional[float] = Field(None, gt=0)
    min_rental_hours: Optional[int] = Field(None, ge=1)
    min_points_required: Optional[int] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    applicable_categories: Optional[List[Category]] = None
    is_active: Optional[bool] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def utc_dates(cls, value):
        return to_naive_utc(value)

class Promo(PromoBase):
    id: int
    usage_count: int
    is_active: bool

    class Config:
        from_attributes = True

class PromoCheck(BaseModel):
    code: str
    rental_hours: int = Field(1, ge=1)
    car_category: Category = "standard"
    base_price: float = Field(1000, ge=0)

class PromoPreview(BaseModel):
    valid: bool = True
    promo: Promo
    estimated_discount: float

class EligiblePromos(BaseModel):
    user_points: int
    promos: List[Promo]

# Alquileres
class RentalCreate(BaseModel):
    car_id: int
    rental_type: RentalType
    start_time: datetime
    duration_hours: int = Field(..., ge=1)
    promo_code: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def utc_start(cls, value):
        return to_naive_utc(value)

class Rental(BaseModel):
    id: int
    user_id: int
    car_id: int
    rental_type: str
    start_time: datetime
    expected_end_time: datetime
    actual_end_time: Optional[datetime] = None
    duration_hours: int
    base_price: float
    chauffeur_fee: float
    discount_amount: float
    overtime_fee: float
    total_price: float
    promo_id: Optional[int] = None
    key_released: bool
    key_released_at: Optional[datetime] = None
    key_returned: bool
    key_returned_at: Optional[datetime] = None
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    # Proyección en vivo para alquileres activos, no se guarda
    overtime_hours: Optional[int] = None
    current_overtime: Optional[float] = None
    current_total: Optional[float] = None

    class Config:
        from_attributes = True

class ReturnResult(BaseModel):
    rental_id: int
    overtime_hours: int
    overtime_fee: float
    total_price: float
    status: str
    points_earned: int

# Pagos
class PaymentCreate(BaseModel):
    rental_id: int
    payment_type: PaymentType
    amount: float = Field(..., ge=1)
    reference_number: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None

class Payment(BaseModel):
    id: int
    rental_id: int
    payment_type: str
    amount: float
    reference_number: Optional[str] = None
    is_received: bool
    received_by: Optional[int] = None
    received_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PaymentConfirmation(BaseModel):
    payment_id: int
    is_received: bool
    total_paid: float
    total_due: float
    is_fully_paid: bool
    rental_status: str

class RentalPayments(BaseModel):
    payments: List[Payment]
    total_paid: float
    total_due: float
    balance: float

# Valoraciones
class RatingCreate(BaseModel):
    rental_id: int
    car_rating: int = Field(..., ge=1, le=5)
    service_rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)

class RatingUpdate(BaseModel):
    car_rating: Optional[int] = Field(None, ge=1, le=5)
    service_rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)

class Rating(BaseModel):
    id: int
    user_id: int
    rental_id: int
    car_id: int
    car_rating: int
    service_rating: int
    comment: Optional[str] = None
    is_approved: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class CarRatings(BaseModel):
    car: Car
    averages: RatingAverages
    ratings: List[Rating]

CarDetail.model_rebuild()
