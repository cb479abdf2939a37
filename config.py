import os

# Base de datos
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./car_rental.db")

# Manejar el caso especial de PostgreSQL en Render
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Autenticación
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# Reglas de negocio
OVERTIME_FEE_PER_HOUR = float(os.getenv("OVERTIME_FEE_PER_HOUR", "200"))
POINTS_PER_RENTAL = int(os.getenv("POINTS_PER_RENTAL", "10"))

CAR_CATEGORIES = ("economy", "standard", "luxury", "premium")
RENTAL_TYPES = ("self_drive", "chauffeured")
PAYMENT_TYPES = ("cash", "credit_card", "debit_card", "gcash", "maya", "bank_transfer")
