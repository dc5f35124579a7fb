"""
Coupon engine tests: validation order, discount math bounds, redemption
caps, and coupon management rules.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from taja.errors import ConsistencyViolation, ValidationError
from taja.extensions import db
from taja.models import Coupon, CouponUsage, Product, Shop
from taja.services import coupon_service
from taja.time_utils import utcnow


# =============================================================================
# DISCOUNT MATH
# =============================================================================

def test_percentage_discount_clamped_to_maximum(make_coupon):
    coupon = make_coupon(
        "SAVE10",
        value=Decimal("10"),
        minimum_order_amount=Decimal("5000"),
        maximum_discount_amount=Decimal("2000"),
    )

    discount = coupon_service.calculate_discount(coupon, 30000)

    assert discount == Decimal("2000")
    assert Decimal("30000") - discount == Decimal("28000")


def test_fixed_discount_never_exceeds_order(make_coupon):
    coupon = make_coupon("FLAT5K", coupon_type="fixed", value=Decimal("5000"))

    assert coupon_service.calculate_discount(coupon, 12000) == Decimal("5000")
    assert coupon_service.calculate_discount(coupon, 3000) == Decimal("3000")
    assert coupon_service.calculate_discount(coupon, "10.60") == Decimal("10")
    assert coupon_service.calculate_discount(coupon, 0) == Decimal("0")


def test_discount_rounds_half_up_to_whole_units(make_coupon):
    coupon = make_coupon("PCT15", value=Decimal("15"))
    assert coupon_service.calculate_discount(coupon, 1003) == Decimal("150")   # 150.45
    assert coupon_service.calculate_discount(coupon, 1010) == Decimal("152")   # 151.50


def test_rounding_never_crosses_a_fractional_maximum(make_coupon):
    coupon = make_coupon("CAPPED", value=Decimal("50"), maximum_discount_amount=Decimal("99.50"))
    assert coupon_service.calculate_discount(coupon, 1000) == Decimal("99")


def test_zero_maximum_means_no_discount(make_coupon):
    coupon = make_coupon("ZERO", value=Decimal("20"), maximum_discount_amount=Decimal("0"))
    assert coupon_service.calculate_discount(coupon, 1000) == Decimal("0")


# =============================================================================
# VALIDATION
# =============================================================================

def test_validate_reports_first_failing_check(make_coupon, buyer, shop, products):
    phone, _ = products
    coupon = make_coupon("SAVE10", minimum_order_amount=Decimal("5000"))

    check = coupon_service.validate(coupon, buyer.id, 30000, shop_id=shop.id, product_ids=[phone.id])
    assert check.valid and check.reason is None

    check = coupon_service.validate(coupon, buyer.id, 4999.99, shop_id=shop.id)
    assert not check.valid
    assert check.reason == "Minimum order amount of 5000.00 required"

    # inactive wins over the minimum amount
    coupon.is_active = False
    db.session.commit()
    check = coupon_service.validate(coupon, buyer.id, 100)
    assert check.reason == coupon_service.REASON_INACTIVE


def test_validate_window_is_half_open(make_coupon, buyer):
    now = utcnow()
    coupon = make_coupon("WINDOW", starts_at=now, expires_at=now + timedelta(hours=1))

    assert coupon_service.validate(coupon, buyer.id, 100, now=now).valid
    assert not coupon_service.validate(coupon, buyer.id, 100, now=now - timedelta(seconds=1)).valid
    assert not coupon_service.validate(coupon, buyer.id, 100, now=now + timedelta(hours=1)).valid


def test_validate_usage_limits(make_coupon, buyer, other_buyer):
    coupon = make_coupon("TWICE", total_usage_limit=2, per_user_usage_limit=1)

    coupon_service.mark_used(coupon, buyer.id, 10000, 1000)
    check = coupon_service.validate(coupon, buyer.id, 10000)
    assert not check.valid
    assert check.reason == "You have already used this coupon 1 time(s)"

    coupon_service.mark_used(coupon, other_buyer.id, 10000, 1000)
    check = coupon_service.validate(coupon, other_buyer.id, 10000)
    assert check.reason == coupon_service.REASON_EXHAUSTED


def test_validate_shop_and_product_scope(make_coupon, buyer, shop, products):
    phone, shirt = products
    shop_coupon = make_coupon("SHOPONLY", shop_id=shop.id)
    assert coupon_service.validate(shop_coupon, buyer.id, 1000, shop_id=shop.id).valid
    assert coupon_service.validate(shop_coupon, buyer.id, 1000, shop_id=shop.id + 1).reason == coupon_service.REASON_WRONG_SHOP
    assert coupon_service.validate(shop_coupon, buyer.id, 1000).reason == coupon_service.REASON_WRONG_SHOP

    by_product = make_coupon("PHONES", applicable_products=[phone.id])
    assert coupon_service.validate(by_product, buyer.id, 1000, product_ids=[phone.id, shirt.id]).valid
    assert coupon_service.validate(by_product, buyer.id, 1000, product_ids=[shirt.id]).reason == coupon_service.REASON_NOT_APPLICABLE
    assert coupon_service.validate(by_product, buyer.id, 1000).reason == coupon_service.REASON_PRODUCTS_REQUIRED

    by_category = make_coupon("FASHION", applicable_categories=["fashion"])
    assert coupon_service.validate(by_category, buyer.id, 1000, product_ids=[shirt.id]).valid
    assert not coupon_service.validate(by_category, buyer.id, 1000, product_ids=[phone.id]).valid


# =============================================================================
# REDEMPTION
# =============================================================================

def test_mark_used_stops_at_the_cap(make_coupon, buyer, other_buyer):
    coupon = make_coupon("ONCE", total_usage_limit=1, per_user_usage_limit=None)

    usage = coupon_service.mark_used(coupon, buyer.id, 8000, 800)
    assert usage.discount_amount == Decimal("800.00")
    assert coupon.current_usage_count == 1

    with pytest.raises(ConsistencyViolation):
        coupon_service.mark_used(coupon, other_buyer.id, 8000, 800)

    db.session.refresh(coupon)
    assert coupon.current_usage_count == 1
    assert db.session.query(CouponUsage).count() == 1


def test_mark_used_enforces_per_user_limit(make_coupon, buyer):
    coupon = make_coupon("PERUSER", per_user_usage_limit=2)
    coupon_service.mark_used(coupon, buyer.id, 1000, 100)
    coupon_service.mark_used(coupon, buyer.id, 1000, 100)

    with pytest.raises(ConsistencyViolation):
        coupon_service.mark_used(coupon, buyer.id, 1000, 100)
    assert coupon_service.count_user_usages(coupon.id, buyer.id) == 2


def test_retired_coupon_cannot_be_redeemed(make_coupon, buyer):
    coupon = make_coupon("RETIRE")
    coupon_service.retire_coupon(coupon)

    with pytest.raises(ConsistencyViolation):
        coupon_service.mark_used(coupon, buyer.id, 1000, 100)


# =============================================================================
# MANAGEMENT
# =============================================================================

def _coupon_data(**overrides):
    data = {
        "code": "new10",
        "type": "percentage",
        "value": 10,
        "title": "New customer",
        "expires_at": (utcnow() + timedelta(days=7)).isoformat() + "Z",
    }
    data.update(overrides)
    return data


def test_create_coupon_normalizes_and_validates(db_session, admin, seller, shop, products):
    coupon = coupon_service.create_coupon(_coupon_data(), admin.id)
    assert coupon.code == "NEW10"
    assert coupon.per_user_usage_limit == 1
    assert coupon.shop_id is None

    with pytest.raises(ValidationError):
        coupon_service.create_coupon(_coupon_data(), admin.id)  # duplicate
    with pytest.raises(ValidationError):
        coupon_service.create_coupon(_coupon_data(code="AB"), admin.id)
    with pytest.raises(ValidationError):
        coupon_service.create_coupon(_coupon_data(code="PCT", value=150), admin.id)
    with pytest.raises(ValidationError):
        coupon_service.create_coupon(_coupon_data(code="PAST", expires_at="2020-01-01T00:00:00Z"), admin.id)
    with pytest.raises(ValidationError):
        coupon_service.create_coupon(_coupon_data(code="KIND", type="bogo"), admin.id)
    with pytest.raises(ValidationError):
        coupon_service.create_coupon(_coupon_data(code="SELLERWIDE"), seller.id)

    shop_coupon = coupon_service.create_coupon(
        _coupon_data(code="CHIDI5", shop_id=shop.id, applicable_products=[products[0].id]), seller.id
    )
    assert shop_coupon.applicable_products == [products[0].id]


def test_create_coupon_rejects_foreign_products(db_session, seller, shop, other_buyer):
    other_shop = Shop(owner_id=other_buyer.id, shop_name="Other", shop_slug="other")
    db.session.add(other_shop)
    db.session.commit()
    foreign = Product(shop_id=other_shop.id, title="Foreign", price=Decimal("10"))
    db.session.add(foreign)
    db.session.commit()

    with pytest.raises(ValidationError):
        coupon_service.create_coupon(
            _coupon_data(code="MIXED", shop_id=shop.id, applicable_products=[foreign.id]), seller.id
        )


def test_used_coupon_freezes_core_fields(make_coupon, buyer):
    coupon = make_coupon("FROZEN")
    coupon_service.update_coupon(coupon, {"value": 15})
    assert coupon.value == Decimal("15.00")

    coupon_service.mark_used(coupon, buyer.id, 1000, 150)
    with pytest.raises(ValidationError):
        coupon_service.update_coupon(coupon, {"value": 20})
    with pytest.raises(ValidationError):
        coupon_service.update_coupon(coupon, {"code": "THAWED"})

    coupon_service.update_coupon(coupon, {"title": "Still editable"})
    assert coupon.title == "Still editable"

    with pytest.raises(ValidationError):
        coupon_service.delete_coupon(coupon)


def test_failed_update_leaves_coupon_unchanged(make_coupon):
    coupon = make_coupon("KEEP", value=Decimal("10"))
    with pytest.raises(ValidationError):
        coupon_service.update_coupon(coupon, {"title": "Changed", "value": 500})

    db.session.refresh(coupon)
    assert coupon.title == "KEEP promo"
    assert coupon.value == Decimal("10.00")


def test_delete_unused_coupon(make_coupon):
    coupon = make_coupon("GONE")
    coupon_service.delete_coupon(coupon)
    assert db.session.query(Coupon).filter_by(code="GONE").first() is None


def test_find_valid_for_user_sorted_by_savings(make_coupon, buyer, shop):
    make_coupon("FIVE", value=Decimal("5"))
    make_coupon("FLAT", coupon_type="fixed", value=Decimal("3000"))
    make_coupon("BIGMIN", value=Decimal("50"), minimum_order_amount=Decimal("100000"))
    make_coupon("SHOP20", value=Decimal("20"), shop_id=shop.id)
    make_coupon("OLD", expires_at=utcnow() - timedelta(minutes=1), starts_at=utcnow() - timedelta(days=2))

    platform_only = coupon_service.find_valid_for_user(buyer.id, order_amount=20000)
    assert [o["coupon"]["code"] for o in platform_only] == ["FLAT", "FIVE"]

    with_shop = coupon_service.find_valid_for_user(buyer.id, order_amount=20000, shop_id=shop.id)
    assert [o["coupon"]["code"] for o in with_shop] == ["SHOP20", "FLAT", "FIVE"]
    assert with_shop[0]["potential_savings"] == "4000"


def test_deactivate_expired_and_generate_code(make_coupon):
    expired = make_coupon("EXPIRED", starts_at=utcnow() - timedelta(days=3), expires_at=utcnow() - timedelta(days=1))
    live = make_coupon("LIVE")

    assert coupon_service.deactivate_expired_coupons() == 1
    db.session.refresh(expired)
    db.session.refresh(live)
    assert expired.is_active is False
    assert live.is_active is True

    code = coupon_service.generate_unique_code(8)
    assert len(code) == 8 and code.isalnum() and code.upper() == code
    assert coupon_service.get_coupon_by_code(code) is None


def test_usage_stats(make_coupon, buyer, other_buyer):
    coupon = make_coupon("STATS", total_usage_limit=10, per_user_usage_limit=None)
    coupon_service.mark_used(coupon, buyer.id, 10000, 1000)
    coupon_service.mark_used(coupon, buyer.id, 5000, 500)
    coupon_service.mark_used(coupon, other_buyer.id, 3000, 300)

    stats = coupon_service.usage_stats(coupon)
    assert stats["total_uses"] == 3
    assert stats["unique_users"] == 2
    assert stats["total_discount_given"] == "1800.00"
    assert stats["average_discount"] == "600.00"
    assert stats["remaining_uses"] == 7
    assert stats["usage_percentage"] == 30.0
    assert stats["top_users"][0] == {"user_id": buyer.id, "uses": 2}
    assert sum(day["count"] for day in stats["usage_by_day"]) == 3
