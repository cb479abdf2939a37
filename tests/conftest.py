import itertools
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models
from auth import get_password_hash
from database import Base, get_db
from main import app, get_now
from tests.helpers import NOW, PASSWORD

PASSWORD_HASH = get_password_hash(PASSWORD)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return SimpleNamespace(now=NOW)


@pytest.fixture
def client(db, clock):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_now] = lambda: clock.now
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(role="user", points=0):
        n = next(counter)
        user = models.User(
            email=f"{role}{n}@mail.com",
            hashed_password=PASSWORD_HASH,
            full_name=f"Test {role.title()} {n}",
            points=points,
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_car(db):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = dict(
            make="Toyota",
            model="Vios",
            year=2022,
            plate_number=f"ABC-{n:04d}",
            category="standard",
            price_per_hour=500,
            chauffeur_fee=100,
            required_points=0,
        )
        fields.update(overrides)
        car = models.Car(**fields)
        db.add(car)
        db.commit()
        db.refresh(car)
        return car

    return _make


@pytest.fixture
def make_promo(db):
    def _make(code="SAVE10", **overrides):
        fields = dict(
            code=code,
            name="Ten percent off",
            discount_type="percentage",
            discount_value=10,
            max_discount=150,
            min_rental_hours=1,
            min_points_required=0,
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=30),
            applicable_categories=[],
        )
        fields.update(overrides)
        promo = models.Promo(**fields)
        db.add(promo)
        db.commit()
        db.refresh(promo)
        return promo

    return _make


@pytest.fixture
def renter(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def car(make_car):
    return make_car()
