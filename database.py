from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

import errors
from config import DATABASE_URL

engine = create_engine(
    DATABASE_URL,
    # Solo para SQLite:
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

@contextmanager
def transaction(db):
    """Confirma al salir o revierte todo si algo falla dentro del bloque."""
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise errors.InternalError("Database operation failed") from exc
    except Exception:
        db.rollback()
        raise
