from datetime import timedelta
from types import SimpleNamespace

import pytest

import errors
import promotions
from tests.helpers import NOW


def _promo(**fields):
    defaults = dict(discount_type="percentage", discount_value=10, max_discount=None)
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def test_percentage_discount_respects_cap():
    assert promotions.calculate_discount(_promo(max_discount=150), 1800) == 150


def test_percentage_discount_without_cap():
    assert promotions.calculate_discount(_promo(), 1800) == 180


def test_fixed_discount_is_capped_by_amount():
    promo = _promo(discount_type="fixed", discount_value=500)

    assert promotions.calculate_discount(promo, 1800) == 500
    assert promotions.calculate_discount(promo, 300) == 300


def test_valid_promo_is_returned(db, make_promo):
    promo = make_promo()

    assert promotions.validate(db, "save10", 0, 3, "standard", NOW).id == promo.id


@pytest.mark.parametrize("setup, message", [
    (dict(is_active=False), "Invalid promo code"),
    (dict(valid_from=NOW + timedelta(days=1)), "not yet valid"),
    (dict(valid_until=NOW - timedelta(minutes=1)), "expired"),
    (dict(usage_limit=2, usage_count=2), "usage limit"),
    (dict(min_points_required=50), "50 points"),
    (dict(min_rental_hours=5), "Minimum rental of 5 hours"),
    (dict(applicable_categories=["luxury", "premium"]), "category"),
])
def test_rejections(db, make_promo, setup, message):
    make_promo(**setup)

    with pytest.raises(errors.PromoRejected) as exc:
        promotions.validate(db, "SAVE10", 0, 3, "standard", NOW)

    assert message in exc.value.message
    assert exc.value.status_code == 400


def test_unknown_code_is_rejected(db):
    with pytest.raises(errors.PromoRejected):
        promotions.validate(db, "NOPE", 100, 3, "standard", NOW)


def test_checks_stop_at_first_failure(db, make_promo):
    make_promo(valid_until=NOW - timedelta(days=1), min_points_required=999)

    with pytest.raises(errors.PromoRejected) as exc:
        promotions.validate(db, "SAVE10", 0, 3, "standard", NOW)

    assert "expired" in exc.value.message


def test_listed_category_is_accepted(db, make_promo):
    make_promo(applicable_categories=["standard"])

    assert promotions.validate(db, "SAVE10", 0, 3, "standard", NOW)


def test_preview_does_not_consume_usage(db, make_promo):
    promo = make_promo(usage_limit=1)

    _, discount = promotions.preview(db, "SAVE10", 0, 3, "standard", 1800, NOW)
    promotions.preview(db, "SAVE10", 0, 3, "standard", 1800, NOW)

    db.refresh(promo)
    assert discount == 150
    assert promo.usage_count == 0


def test_redeem_stops_at_usage_limit(db, make_promo):
    promo = make_promo(usage_limit=1)

    promotions.redeem(db, promo)
    db.commit()
    with pytest.raises(errors.PromoRejected):
        promotions.redeem(db, promo)
    db.rollback()

    db.refresh(promo)
    assert promo.usage_count == 1


def test_eligible_promos_filter_by_points(db, make_promo):
    make_promo()
    make_promo(code="VIP", min_points_required=100)

    codes = [p.code for p in promotions.list_eligible(db, 10, NOW)]

    assert codes == ["SAVE10"]
