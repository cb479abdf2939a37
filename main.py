import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import crud
import errors
import events
import loyalty
import models
import payments
import pricing
import promotions
import rentals
import schemas
from auth import Principal, decode_token, token_for
from config import CAR_CATEGORIES, CORS_ORIGINS, LOG_LEVEL
from database import engine, get_db

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Crear las tablas en la base de datos
    models.Base.metadata.create_all(bind=engine)
    yield

app = FastAPI(title="Car Rental API", version="1.0.0", lifespan=lifespan)

# Configuración CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)

def ok(data=None, message: str = "Success"):
    return {"success": True, "message": message, "data": data}

# Manejo de errores
@app.exception_handler(errors.ServiceError)
async def service_error_handler(request: Request, exc: errors.ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    content = schemas.ErrorResponse(message=exc.message, errors=exc.errors or None).model_dump(exclude_none=True)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=schemas.ErrorResponse(message=str(exc.detail)).model_dump(exclude_none=True),
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    field_errors = {}
    for error in exc.errors():
        location = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        field_errors.setdefault(".".join(location) or "body", error["msg"])
    return JSONResponse(
        status_code=422,
        content=schemas.ErrorResponse(message="Validation failed", errors=field_errors).model_dump(),
    )

@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "message": "Internal server error"},
    )

# Dependencias
def get_now() -> datetime:
    return pricing.utcnow()

def _principal_from_token(token: Optional[str], db: Session) -> Optional[Principal]:
    if not token:
        return None
    payload = decode_token(token)
    if payload is None:
        return None
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    user = crud.get_user(db, user_id)
    if user is None:
        return None
    return Principal.from_user(user)

async def get_current_principal(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    principal = _principal_from_token(token, db)
    if principal is None:
        raise errors.Unauthorized("Could not validate credentials")
    return principal

async def get_optional_principal(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    return _principal_from_token(token, db)

async def get_admin_principal(principal: Principal = Depends(get_current_principal)):
    if not principal.is_admin:
        raise errors.Forbidden("Admin privileges required")
    return principal

def _catalog(db: Session, points: int) -> schemas.CarCatalog:
    return schemas.CarCatalog(
        available=[schemas.Car.model_validate(c) for c in crud.get_cars_for_points(db, points)],
        locked=crud.get_locked_cars(db, points),
        user_points=points,
    )

@app.get("/")
def read_root():
    return ok({
        "name": "Car Rental API",
        "version": app.version,
        "endpoints": {
            "auth": "/api/auth/*",
            "cars": "/api/cars/*",
            "rentals": "/api/rentals/*",
            "payments": "/api/payments/*",
            "ratings": "/api/ratings/*",
            "promos": "/api/promos/*",
            "admin": "/api/admin/*",
        },
    }, "Welcome to Car Rental API")

# Rutas de autenticación
@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED,
          response_model=schemas.Envelope[schemas.Registration])
def register(user: schemas.UserCreate, db: Session = Depends(get_db)):
    db_user = crud.create_user(db, user)
    return ok({"user_id": db_user.id, "email": db_user.email, "token": token_for(db_user)},
              "Registration successful")

@app.post("/api/auth/login", response_model=schemas.Envelope[schemas.LoginResult])
def login(credentials: schemas.UserLogin, db: Session = Depends(get_db)):
    user = crud.authenticate_user(db, credentials.email, credentials.password)
    if not user:
        events.emit("login_failed", email=credentials.email)
        raise errors.Unauthorized("Invalid email or password")
    events.emit("login_succeeded", user_id=user.id)
    return ok({"user": user, "token": token_for(user), "cars": _catalog(db, user.points)},
              "Login successful")

@app.post("/api/auth/token", response_model=schemas.Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """Login con formulario OAuth2 (lo usa el botón Authorize de /docs)."""
    user = crud.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise errors.Unauthorized("Incorrect username or password")
    return {"access_token": token_for(user), "token_type": "bearer"}

@app.post("/api/auth/logout")
def logout(principal: Optional[Principal] = Depends(get_optional_principal)):
    """Los tokens no se guardan en el servidor: el cliente solo tiene que descartarlo."""
    if principal:
        events.emit("logout", user_id=principal.user_id)
    return ok(None, "Logged out successfully")

@app.get("/api/auth/profile", response_model=schemas.Envelope[schemas.User])
def read_profile(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return ok(crud.get_user(db, principal.user_id))

@app.put("/api/auth/profile", response_model=schemas.Envelope[schemas.User])
def update_profile(
    changes: schemas.UserUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    return ok(crud.update_user(db, principal.user_id, changes), "Profile updated successfully")

@app.post("/api/auth/refresh", response_model=schemas.Envelope[schemas.Token])
def refresh_token(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    user = crud.get_user(db, principal.user_id)
    return ok({"access_token": token_for(user), "token_type": "bearer"}, "Token refreshed")

# Rutas para coches
@app.get("/api/cars")
def read_cars(principal: Optional[Principal] = Depends(get_optional_principal), db: Session = Depends(get_db)):
    """Coches reservables; con sesión se separan los desbloqueados de los bloqueados por puntos."""
    if principal:
        catalog = _catalog(db, loyalty.balance(db, principal.user_id))
        return ok(catalog.model_dump())
    cars = [schemas.Car.model_validate(c) for c in crud.get_available_cars(db)]
    return ok(schemas.GuestCatalog(cars=cars).model_dump())

@app.get("/api/cars/available", response_model=schemas.Envelope[List[schemas.Car]])
def read_available_cars(db: Session = Depends(get_db)):
    return ok(crud.get_available_cars(db))

@app.get("/api/cars/unlocked", response_model=schemas.Envelope[schemas.UnlockedCars])
def read_unlocked_cars(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    points = loyalty.balance(db, principal.user_id)
    return ok({"user_points": points, "cars": crud.get_cars_for_points(db, points)})

@app.get("/api/cars/locked", response_model=schemas.Envelope[schemas.LockedCars])
def read_locked_cars(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    points = loyalty.balance(db, principal.user_id)
    return ok({"user_points": points, "cars": crud.get_locked_cars(db, points)})

@app.get("/api/cars/category/{category}", response_model=schemas.Envelope[schemas.CategoryCars])
def read_cars_by_category(category: str, db: Session = Depends(get_db)):
    if category not in CAR_CATEGORIES:
        raise errors.BadRequest("Invalid category. Must be one of: " + ", ".join(CAR_CATEGORIES))
    return ok({"category": category, "cars": crud.get_cars_by_category(db, category)})

@app.get("/api/cars/{car_id}", response_model=schemas.Envelope[schemas.CarDetail])
def read_car(
    car_id: int,
    principal: Optional[Principal] = Depends(get_optional_principal),
    db: Session = Depends(get_db)
):
    car = crud.get_car_or_404(db, car_id)
    can_rent = False
    points_needed = 0
    if principal:
        points = loyalty.balance(db, principal.user_id)
        can_rent = car.is_bookable and points >= car.required_points
        points_needed = max(car.required_points - points, 0)
    return ok({
        "car": car,
        "averages": crud.get_car_rating_averages(db, car_id),
        "ratings": crud.get_car_ratings(db, car_id),
        "can_rent": can_rent,
        "points_needed": points_needed,
    })

# Rutas para alquileres
@app.post("/api/rentals", status_code=status.HTTP_201_CREATED, response_model=schemas.Envelope[schemas.Rental])
def create_rental(
    rental: schemas.RentalCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Crea un alquiler pendiente de pago para el usuario actual."""
    db_rental = rentals.create(
        db, principal,
        car_id=rental.car_id,
        rental_type=rental.rental_type,
        start_time=rental.start_time,
        duration_hours=rental.duration_hours,
        promo_code=rental.promo_code,
        notes=rental.notes,
        now=now,
    )
    return ok(rentals.project(db_rental, now), "Rental created. Please proceed to payment.")

@app.get("/api/rentals/my-rentals", response_model=schemas.Envelope[List[schemas.Rental]])
def read_my_rentals(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return ok(rentals.list_for_user(db, principal.user_id, now))

@app.get("/api/rentals/{rental_id}", response_model=schemas.Envelope[schemas.Rental])
def read_rental(
    rental_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Detalle del alquiler con el recargo por retraso calculado al momento."""
    return ok(rentals.get_for_principal(db, rental_id, principal, now))

@app.put("/api/rentals/{rental_id}/release-key", response_model=schemas.Envelope[schemas.Rental])
def release_key(
    rental_id: int,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    rental = rentals.release_key(db, rental_id, admin, now)
    return ok(rentals.project(rental, now), "Car key released to renter")

@app.put("/api/rentals/{rental_id}/return", response_model=schemas.Envelope[schemas.ReturnResult])
def return_rental(
    rental_id: int,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return ok(rentals.return_car(db, rental_id, admin, now), "Car returned successfully")

@app.put("/api/rentals/{rental_id}/cancel", response_model=schemas.Envelope[schemas.Rental])
def cancel_rental(
    rental_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    rental = rentals.cancel(db, rental_id, principal)
    return ok(rentals.project(rental, now), "Rental cancelled")

# Rutas para pagos
@app.post("/api/payments", status_code=status.HTTP_201_CREATED, response_model=schemas.Envelope[schemas.Payment])
def create_payment(
    payment: schemas.PaymentCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    db_payment = payments.record(
        db, principal,
        rental_id=payment.rental_id,
        payment_type=payment.payment_type,
        amount=payment.amount,
        reference_number=payment.reference_number,
        notes=payment.notes,
    )
    return ok(db_payment, "Payment recorded. Awaiting confirmation.")

@app.get("/api/payments/my-payments", response_model=schemas.Envelope[List[schemas.Payment]])
def read_my_payments(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return ok(payments.list_for_user(db, principal.user_id))

@app.get("/api/payments/rental/{rental_id}", response_model=schemas.Envelope[schemas.RentalPayments])
def read_rental_payments(
    rental_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return ok(payments.summary_for_rental(db, rental_id, principal, now))

@app.put("/api/payments/{payment_id}/confirm", response_model=schemas.Envelope[schemas.PaymentConfirmation])
def confirm_payment(
    payment_id: int,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return ok(payments.confirm(db, payment_id, admin, now), "Payment confirmed")

# Rutas para valoraciones
@app.post("/api/ratings", status_code=status.HTTP_201_CREATED, response_model=schemas.Envelope[schemas.Rating])
def create_rating(
    rating: schemas.RatingCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    return ok(crud.create_rating(db, rating, principal), "Rating submitted successfully")

@app.get("/api/ratings/my-ratings", response_model=schemas.Envelope[List[schemas.Rating]])
def read_my_ratings(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return ok(crud.get_user_ratings(db, principal.user_id))

@app.get("/api/ratings/car/{car_id}", response_model=schemas.Envelope[schemas.CarRatings])
def read_car_ratings(car_id: int, db: Session = Depends(get_db)):
    car = crud.get_car_or_404(db, car_id)
    return ok({
        "car": car,
        "averages": crud.get_car_rating_averages(db, car_id),
        "ratings": crud.get_car_ratings(db, car_id),
    })

@app.put("/api/ratings/{rating_id}", response_model=schemas.Envelope[schemas.Rating])
def update_rating(
    rating_id: int,
    changes: schemas.RatingUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    return ok(crud.update_rating(db, rating_id, changes, principal), "Rating updated successfully")

@app.delete("/api/ratings/{rating_id}")
def delete_rating(
    rating_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    crud.delete_rating(db, rating_id, principal)
    return ok(None, "Rating deleted successfully")

# Rutas para promociones
@app.get("/api/promos", response_model=schemas.Envelope[List[schemas.Promo]])
def read_active_promos(db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    return ok(promotions.list_active(db, now))

@app.get("/api/promos/eligible", response_model=schemas.Envelope[schemas.EligiblePromos])
def read_eligible_promos(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    points = loyalty.balance(db, principal.user_id)
    return ok({"user_points": points, "promos": promotions.list_eligible(db, points, now)})

@app.post("/api/promos/validate", response_model=schemas.Envelope[schemas.PromoPreview])
def validate_promo(
    check: schemas.PromoCheck,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Comprueba un código sin consumir un uso."""
    points = loyalty.balance(db, principal.user_id)
    promo, discount = promotions.preview(
        db, check.code, points, check.rental_hours, check.car_category, check.base_price, now
    )
    return ok({"valid": True, "promo": promo, "estimated_discount": discount})

@app.get("/api/promos/{code}", response_model=schemas.Envelope[schemas.Promo])
def read_promo(code: str, db: Session = Depends(get_db)):
    promo = promotions.find_by_code(db, code)
    if promo is None:
        raise errors.NotFound("Promo not found")
    return ok(promo)

# Rutas de administración
@app.get("/api/admin/dashboard")
def admin_dashboard(
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Estadísticas para el panel (solo administradores)."""
    events.emit("view_dashboard", admin_id=admin.user_id)
    return ok(crud.get_dashboard(db, now))

@app.get("/api/admin/transactions", response_model=schemas.Envelope[schemas.Page[schemas.Rental]])
def admin_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    items, total = rentals.list_all(db, now, page=page, limit=limit)
    return ok({
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    })

@app.get("/api/admin/rentals/active", response_model=schemas.Envelope[List[schemas.Rental]])
def admin_active_rentals(
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return ok(rentals.list_active(db, now))

@app.get("/api/admin/cars", response_model=schemas.Envelope[List[schemas.Car]])
def admin_cars(admin: Principal = Depends(get_admin_principal), db: Session = Depends(get_db)):
    return ok(crud.get_cars(db))

@app.post("/api/admin/cars", status_code=status.HTTP_201_CREATED, response_model=schemas.Envelope[schemas.Car])
def admin_create_car(
    car: schemas.CarBase,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    db_car = crud.create_car(db, car)
    events.emit("create_car", admin_id=admin.user_id, car_id=db_car.id)
    return ok(db_car, "Car added")

@app.put("/api/admin/cars/{car_id}", response_model=schemas.Envelope[schemas.Car])
def admin_update_car(
    car_id: int,
    changes: schemas.CarUpdate,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    db_car = crud.update_car(db, car_id, changes)
    events.emit("update_car", admin_id=admin.user_id, car_id=car_id)
    return ok(db_car, "Car updated")

@app.delete("/api/admin/cars/{car_id}")
def admin_delete_car(
    car_id: int,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    deleted = crud.delete_car(db, car_id)
    events.emit("delete_car", admin_id=admin.user_id, car_id=car_id, deleted=deleted)
    message = "Car deleted" if deleted else "Car has rental history; marked as unavailable"
    return ok({"car_id": car_id, "deleted": deleted}, message)

@app.get("/api/admin/users", response_model=schemas.Envelope[List[schemas.AdminUser]])
def admin_users(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    return ok(crud.get_users(db, skip=skip, limit=limit))

@app.get("/api/admin/promos", response_model=schemas.Envelope[List[schemas.Promo]])
def admin_promos(admin: Principal = Depends(get_admin_principal), db: Session = Depends(get_db)):
    return ok(crud.get_promos(db))

@app.post("/api/admin/promos", status_code=status.HTTP_201_CREATED, response_model=schemas.Envelope[schemas.Promo])
def admin_create_promo(
    promo: schemas.PromoBase,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    db_promo = crud.create_promo(db, promo)
    events.emit("create_promo", admin_id=admin.user_id, promo_id=db_promo.id)
    return ok(db_promo, "Promo created")

@app.put("/api/admin/promos/{promo_id}", response_model=schemas.Envelope[schemas.Promo])
def admin_update_promo(
    promo_id: int,
    changes: schemas.PromoUpdate,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    db_promo = crud.update_promo(db, promo_id, changes)
    events.emit("update_promo", admin_id=admin.user_id, promo_id=promo_id)
    return ok(db_promo, "Promo updated")

@app.delete("/api/admin/promos/{promo_id}", response_model=schemas.Envelope[schemas.Promo])
def admin_deactivate_promo(
    promo_id: int,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    db_promo = crud.deactivate_promo(db, promo_id)
    events.emit("deactivate_promo", admin_id=admin.user_id, promo_id=promo_id)
    return ok(db_promo, "Promo deactivated")

@app.get("/api/admin/payments", response_model=schemas.Envelope[List[schemas.Payment]])
def admin_payments(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    return ok(payments.list_all(db, limit=limit, offset=skip))

@app.get("/api/admin/payments/pending", response_model=schemas.Envelope[List[schemas.Payment]])
def admin_pending_payments(admin: Principal = Depends(get_admin_principal), db: Session = Depends(get_db)):
    return ok(payments.list_pending(db))

@app.put("/api/admin/ratings/{rating_id}/approve", response_model=schemas.Envelope[schemas.Rating])
def admin_approve_rating(
    rating_id: int,
    approved: bool = True,
    admin: Principal = Depends(get_admin_principal),
    db: Session = Depends(get_db)
):
    return ok(crud.set_rating_approved(db, rating_id, approved), "Rating updated")

# Configuración para producción
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
