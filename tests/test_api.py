from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

import main
from tests.helpers import NOW, PASSWORD, auth_headers

START = NOW.isoformat()


def _book(client, user, car, **extra):
    body = {"car_id": car.id, "rental_type": "chauffeured", "start_time": START, "duration_hours": 3}
    body.update(extra)
    return client.post("/api/rentals", json=body, headers=auth_headers(user))


def test_root_describes_api(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "rentals" in response.json()["data"]["endpoints"]


def test_register_then_login(client):
    response = client.post("/api/auth/register", json={
        "email": "Juan@Mail.com", "password": "drive2026", "full_name": "Juan Cruz", "phone": "+63 917 555 0101",
    })
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Registration successful"
    assert body["data"]["token"]

    response = client.post("/api/auth/login", json={"email": "juan@mail.com", "password": "drive2026"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["user"]["full_name"] == "Juan Cruz"
    assert data["user"]["points"] == 0
    assert "hashed_password" not in data["user"]
    assert data["cars"]["user_points"] == 0

    profile = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {data['token']}"})
    assert profile.json()["data"]["email"].lower() == "juan@mail.com"


def test_register_duplicate_email_conflicts(client, renter):
    response = client.post("/api/auth/register", json={
        "email": renter.email, "password": "drive2026", "full_name": "Someone Else",
    })

    assert response.status_code == 409
    assert response.json() == {"success": False, "message": "Email already registered"}


def test_register_reports_field_errors(client):
    response = client.post("/api/auth/register", json={
        "email": "not-an-email", "password": "short", "full_name": "Juan Cruz",
    })

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert set(body["errors"]) == {"email", "password"}


def test_login_with_wrong_password(client, renter):
    response = client.post("/api/auth/login", json={"email": renter.email, "password": "wrong-pass1"})

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_token_endpoint_accepts_form_login(client, renter):
    response = client.post("/api/auth/token", data={"username": renter.email, "password": PASSWORD})

    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


def test_protected_route_requires_token(client):
    response = client.get("/api/rentals/my-rentals")

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Could not validate credentials"}


def test_garbage_token_is_rejected(client):
    response = client.get("/api/auth/profile", headers={"Authorization": "Bearer not.a.token"})

    assert response.status_code == 401


def test_admin_routes_reject_regular_users(client, renter, car):
    rental_id = _book(client, renter, car).json()["data"]["id"]

    response = client.put(f"/api/rentals/{rental_id}/release-key", headers=auth_headers(renter))

    assert response.status_code == 403
    assert response.json()["message"] == "Admin privileges required"
    assert client.get("/api/admin/dashboard", headers=auth_headers(renter)).status_code == 403


def test_unknown_car_returns_envelope(client):
    response = client.get("/api/cars/999")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Car not found"}


def test_catalog_splits_by_points(client, renter, car, make_car):
    luxury = make_car(category="luxury", required_points=50, price_per_hour=1500)

    data = client.get("/api/cars", headers=auth_headers(renter)).json()["data"]

    assert [c["id"] for c in data["available"]] == [car.id]
    assert [(c["id"], c["points_needed"]) for c in data["locked"]] == [(luxury.id, 50)]

    guest = client.get("/api/cars").json()["data"]
    assert {c["id"] for c in guest["cars"]} == {car.id, luxury.id}


def test_car_detail_shows_whether_user_can_rent(client, make_user, make_car):
    luxury = make_car(category="luxury", required_points=50)

    data = client.get(f"/api/cars/{luxury.id}", headers=auth_headers(make_user(points=20))).json()["data"]

    assert data["can_rent"] is False
    assert data["points_needed"] == 30
    assert data["averages"]["total_ratings"] == 0


def test_invalid_category(client):
    response = client.get("/api/cars/category/spaceship")

    assert response.status_code == 400


def test_booking_validation_errors(client, renter, car):
    response = _book(client, renter, car, duration_hours=0, rental_type="bicycle")

    assert response.status_code == 422
    assert set(response.json()["errors"]) == {"duration_hours", "rental_type"}


def test_booking_locked_car_is_forbidden(client, renter, make_car):
    luxury = make_car(category="luxury", required_points=50)

    response = _book(client, renter, luxury)

    assert response.status_code == 403
    assert response.json()["message"] == "You need 50 points to rent this car. You have 0 points."


def test_booking_with_rejected_promo(client, renter, car, make_promo):
    make_promo(valid_until=NOW - timedelta(hours=1))

    response = _book(client, renter, car, promo_code="SAVE10")

    assert response.status_code == 400
    assert response.json()["message"] == "Promo code has expired"


def test_promo_preview_does_not_use_it(client, db, renter, make_promo):
    promo = make_promo()

    response = client.post("/api/promos/validate", headers=auth_headers(renter), json={
        "code": "save10", "rental_hours": 3, "car_category": "standard", "base_price": 1800,
    })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is True
    assert data["estimated_discount"] == 150
    db.refresh(promo)
    assert promo.usage_count == 0


def test_other_users_cannot_see_rental(client, renter, make_user, car):
    rental_id = _book(client, renter, car).json()["data"]["id"]

    response = client.get(f"/api/rentals/{rental_id}", headers=auth_headers(make_user()))

    assert response.status_code == 403


def test_full_rental_lifecycle(client, clock, renter, admin, car):
    created = _book(client, renter, car)
    assert created.status_code == 201
    rental = created.json()["data"]
    assert rental["status"] == "pending"
    assert rental["total_price"] == 1800

    payment = client.post("/api/payments", headers=auth_headers(renter), json={
        "rental_id": rental["id"], "payment_type": "gcash", "amount": 1800, "reference_number": "GC-001",
    })
    assert payment.status_code == 201
    assert payment.json()["data"]["is_received"] is False

    confirmed = client.put(f"/api/payments/{payment.json()['data']['id']}/confirm", headers=auth_headers(admin))
    assert confirmed.json()["data"]["rental_status"] == "confirmed"

    released = client.put(f"/api/rentals/{rental['id']}/release-key", headers=auth_headers(admin))
    assert released.json()["data"]["status"] == "active"
    assert client.put(f"/api/rentals/{rental['id']}/release-key",
                      headers=auth_headers(admin)).status_code == 409

    # 90 minutos tarde
    clock.now = NOW + timedelta(hours=4, minutes=30)
    live = client.get(f"/api/rentals/{rental['id']}", headers=auth_headers(renter)).json()["data"]
    assert live["overtime_hours"] == 2
    assert live["current_overtime"] == 400
    assert live["current_total"] == 2200
    assert live["total_price"] == 1800

    balance = client.get(f"/api/payments/rental/{rental['id']}", headers=auth_headers(renter)).json()["data"]
    assert balance["balance"] == 400

    returned = client.put(f"/api/rentals/{rental['id']}/return", headers=auth_headers(admin))
    assert returned.status_code == 200
    assert returned.json()["data"] == {
        "rental_id": rental["id"],
        "overtime_hours": 2,
        "overtime_fee": 400,
        "total_price": 2200,
        "status": "completed",
        "points_earned": 10,
    }

    profile = client.get("/api/auth/profile", headers=auth_headers(renter)).json()["data"]
    assert profile["points"] == 10
    assert client.get(f"/api/cars/{car.id}").json()["data"]["car"]["is_rented"] is False

    rating = {"rental_id": rental["id"], "car_rating": 5, "service_rating": 4, "comment": "Smooth ride"}
    first = client.post("/api/ratings", json=rating, headers=auth_headers(renter))
    assert first.status_code == 201
    second = client.post("/api/ratings", json=rating, headers=auth_headers(renter))
    assert second.status_code == 409

    averages = client.get(f"/api/ratings/car/{car.id}").json()["data"]["averages"]
    assert averages == {"avg_car_rating": 5.0, "avg_service_rating": 4.0, "total_ratings": 1}


def test_rating_before_completion_is_rejected(client, renter, car):
    rental_id = _book(client, renter, car).json()["data"]["id"]

    response = client.post("/api/ratings", headers=auth_headers(renter), json={
        "rental_id": rental_id, "car_rating": 5, "service_rating": 5,
    })

    assert response.status_code == 400


def test_cancel_through_api(client, renter, car):
    rental_id = _book(client, renter, car).json()["data"]["id"]

    response = client.put(f"/api/rentals/{rental_id}/cancel", headers=auth_headers(renter))

    assert response.json()["data"]["status"] == "cancelled"
    assert client.put(f"/api/rentals/{rental_id}/cancel", headers=auth_headers(renter)).status_code == 400


def test_admin_creates_car_and_promo(client, admin):
    car = client.post("/api/admin/cars", headers=auth_headers(admin), json={
        "make": "Honda", "model": "City", "year": 2023, "plate_number": "NCR-1234",
        "category": "economy", "price_per_hour": 350, "chauffeur_fee": 80,
    })
    assert car.status_code == 201
    assert car.json()["data"]["is_rented"] is False

    duplicate = client.post("/api/admin/cars", headers=auth_headers(admin), json={
        "make": "Honda", "model": "City", "year": 2023, "plate_number": "NCR-1234", "price_per_hour": 350,
    })
    assert duplicate.status_code == 409

    promo = client.post("/api/admin/promos", headers=auth_headers(admin), json={
        "code": "summer", "name": "Summer", "discount_type": "fixed", "discount_value": 200,
        "valid_from": "2026-03-01T00:00:00Z", "valid_until": "2026-06-01T00:00:00Z",
    })
    assert promo.status_code == 201
    assert promo.json()["data"]["code"] == "SUMMER"

    backwards = client.post("/api/admin/promos", headers=auth_headers(admin), json={
        "code": "oops", "name": "Oops", "discount_value": 5,
        "valid_from": "2026-06-01T00:00:00", "valid_until": "2026-03-01T00:00:00",
    })
    assert backwards.status_code == 422
    assert "valid_until" in backwards.json()["errors"]


def test_delete_car_with_history_only_withdraws_it(client, db, renter, admin, car):
    rental_id = _book(client, renter, car).json()["data"]["id"]
    client.put(f"/api/rentals/{rental_id}/cancel", headers=auth_headers(renter))

    response = client.delete(f"/api/admin/cars/{car.id}", headers=auth_headers(admin))

    assert response.json()["data"] == {"car_id": car.id, "deleted": False}
    db.refresh(car)
    assert car.is_available is False


def test_dashboard_and_transactions(client, renter, admin, car):
    _book(client, renter, car)

    dashboard = client.get("/api/admin/dashboard", headers=auth_headers(admin)).json()["data"]
    assert dashboard["rentals"]["total_rentals"] == 1
    assert dashboard["cars"] == {"total": 1, "available": 0}

    page = client.get("/api/admin/transactions?limit=10", headers=auth_headers(admin)).json()["data"]
    assert page["total"] == 1
    assert page["pages"] == 1
    assert page["items"][0]["status"] == "pending"


def test_promo_update_ignores_nulls(client, admin, make_promo):
    promo = make_promo()

    response = client.put(f"/api/admin/promos/{promo.id}", headers=auth_headers(admin),
                          json={"valid_from": None, "name": None, "discount_value": None, "description": "Spring"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Ten percent off"
    assert data["discount_value"] == 10
    assert data["description"] == "Spring"


def test_promo_update_keeps_percentage_within_100(client, admin, make_promo):
    promo = make_promo()

    response = client.put(f"/api/admin/promos/{promo.id}", headers=auth_headers(admin),
                          json={"discount_value": 500})

    assert response.status_code == 422
    assert "discount_value" in response.json()["errors"]
    switched = client.put(f"/api/admin/promos/{promo.id}", headers=auth_headers(admin),
                          json={"discount_type": "fixed", "discount_value": 500})
    assert switched.status_code == 200


def test_promo_limit_cannot_drop_below_usage(client, db, admin, make_promo):
    promo = make_promo(usage_count=3)

    response = client.put(f"/api/admin/promos/{promo.id}", headers=auth_headers(admin),
                          json={"usage_limit": 1})

    assert response.status_code == 422
    assert "usage_limit" in response.json()["errors"]
    db.refresh(promo)
    assert promo.usage_limit is None
    assert client.put(f"/api/admin/promos/{promo.id}", headers=auth_headers(admin),
                      json={"usage_limit": 3}).status_code == 200


def test_car_update_ignores_nulls(client, admin, car):
    response = client.put(f"/api/admin/cars/{car.id}", headers=auth_headers(admin),
                          json={"price_per_hour": None, "seats": 5})

    assert response.status_code == 200
    assert response.json()["data"]["price_per_hour"] == 500
    assert response.json()["data"]["seats"] == 5


def test_car_update_to_taken_plate_conflicts(client, admin, car, make_car):
    other = make_car()

    response = client.put(f"/api/admin/cars/{other.id}", headers=auth_headers(admin),
                          json={"plate_number": car.plate_number})

    assert response.status_code == 409
    assert response.json()["message"] == "Plate number already exists"
    assert client.put(f"/api/admin/cars/{car.id}", headers=auth_headers(admin),
                      json={"plate_number": car.plate_number}).status_code == 200


def test_startup_creates_tables(monkeypatch):
    fresh = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    monkeypatch.setattr(main, "engine", fresh)

    with TestClient(main.app):
        pass

    assert {"users", "cars", "promos", "rentals", "payments", "ratings"} <= set(inspect(fresh).get_table_names())
