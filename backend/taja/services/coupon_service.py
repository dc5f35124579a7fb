# Overview: Service-layer operations for coupons; validation, discount math and capped redemption.

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConsistencyViolation, NotFoundError, ValidationError
from ..extensions import db
from ..models import Coupon, CouponUsage, Product, Shop, User
from ..money import ZERO, to_money
from ..time_utils import parse_iso_datetime, utcnow
from .concurrency import guarded_update

"""
Coupon Invariants

- A coupon is usable iff is_active and starts_at <= now < expires_at.
- current_usage_count never exceeds total_usage_limit; the cap and the
  per-user limit are enforced inside the same UPDATE that increments the
  counter, so concurrent redemptions cannot overshoot.
- 0 <= discount <= order amount, and discount <= maximum_discount_amount.
- type, value, code and shop are frozen once the coupon has been used.
"""

COUPON_PERCENTAGE = "percentage"
COUPON_FIXED = "fixed"
COUPON_TYPES = (COUPON_PERCENTAGE, COUPON_FIXED)

CODE_MIN_LENGTH = 3
CODE_MAX_LENGTH = 20
GENERATED_CODE_ALPHABET = string.ascii_uppercase + string.digits

FROZEN_AFTER_USE = ("type", "value", "code", "shop_id")
UPDATABLE_FIELDS = (
    "title",
    "description",
    "minimum_order_amount",
    "maximum_discount_amount",
    "applicable_categories",
    "applicable_products",
    "total_usage_limit",
    "per_user_usage_limit",
    "starts_at",
    "expires_at",
    "is_active",
) + FROZEN_AFTER_USE

REASON_INACTIVE = "Coupon is not active or has expired"
REASON_EXHAUSTED = "Coupon usage limit has been reached"
REASON_PER_USER = "You have already used this coupon {count} time(s)"
REASON_MINIMUM = "Minimum order amount of {amount} required"
REASON_WRONG_SHOP = "This coupon is not applicable to this shop"
REASON_PRODUCTS_REQUIRED = "This coupon requires specific products"
REASON_NOT_APPLICABLE = "This coupon is not applicable to the selected products"


@dataclass(frozen=True)
class CouponCheck:
    valid: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "reason": self.reason}


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def get_coupon_by_code(code: str | None) -> Optional[Coupon]:
    code = normalize_code(code)
    if not code:
        return None
    return db.session.query(Coupon).filter_by(code=code).first()


def get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    return coupon


def is_within_window(coupon: Coupon, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return bool(coupon.is_active) and coupon.starts_at <= now < coupon.expires_at


def count_user_usages(coupon_id: int, user_id: int) -> int:
    return (
        db.session.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .scalar()
        or 0
    )


def _scope_matches(coupon: Coupon, product_ids: set[int]) -> bool:
    allowed_products = {int(p) for p in (coupon.applicable_products or [])}
    if allowed_products & product_ids:
        return True
    allowed_categories = set(coupon.applicable_categories or [])
    if not allowed_categories:
        return False
    categories = {
        row[0]
        for row in db.session.query(Product.category).filter(Product.id.in_(product_ids)).all()
        if row[0]
    }
    return bool(categories & allowed_categories)


def validate(
    coupon: Coupon,
    user_id: int,
    order_amount,
    shop_id: int | None = None,
    product_ids: Iterable[int] | None = None,
    *,
    now: datetime | None = None,
) -> CouponCheck:
    """
    Check whether `user_id` may use `coupon` on an order.

    Checks run in a fixed order and the first failure is reported.
    Never writes.
    """
    amount = to_money(order_amount, "order_amount")

    if not is_within_window(coupon, now):
        return CouponCheck(False, REASON_INACTIVE)

    if coupon.total_usage_limit is not None and coupon.current_usage_count >= coupon.total_usage_limit:
        return CouponCheck(False, REASON_EXHAUSTED)

    if coupon.per_user_usage_limit is not None:
        used = count_user_usages(coupon.id, user_id)
        if used >= coupon.per_user_usage_limit:
            return CouponCheck(False, REASON_PER_USER.format(count=used))

    minimum = Decimal(coupon.minimum_order_amount or 0)
    if amount < minimum:
        return CouponCheck(False, REASON_MINIMUM.format(amount=to_money(minimum)))

    if coupon.shop_id is not None and coupon.shop_id != shop_id:
        return CouponCheck(False, REASON_WRONG_SHOP)

    if coupon.applicable_products or coupon.applicable_categories:
        ids = {int(p) for p in (product_ids or [])}
        if not ids:
            return CouponCheck(False, REASON_PRODUCTS_REQUIRED)
        if not _scope_matches(coupon, ids):
            return CouponCheck(False, REASON_NOT_APPLICABLE)

    return CouponCheck(True)


def _round_within(discount: Decimal, ceiling: Decimal) -> Decimal:
    rounded = discount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if rounded > ceiling:
        rounded = ceiling.quantize(Decimal("1"), rounding=ROUND_FLOOR)
    return rounded


def calculate_discount(coupon: Coupon, order_amount) -> Decimal:
    """
    Pure discount math, rounded half-up to whole currency units.

    Never exceeds the order amount or maximum_discount_amount.
    """
    amount = to_money(order_amount, "order_amount")
    if amount <= ZERO:
        return Decimal("0")

    value = Decimal(coupon.value)
    if coupon.coupon_type == COUPON_PERCENTAGE:
        discount = amount * value / Decimal(100)
    elif coupon.coupon_type == COUPON_FIXED:
        discount = value
    else:
        raise ValidationError(f"Invalid coupon type '{coupon.coupon_type}'")

    ceiling = amount
    if coupon.maximum_discount_amount is not None:
        ceiling = min(ceiling, Decimal(coupon.maximum_discount_amount))
    discount = max(min(discount, ceiling), Decimal("0"))
    return _round_within(discount, ceiling)


def mark_used(
    coupon: Coupon,
    user_id: int,
    order_amount,
    discount_amount,
    *,
    order_id: int | None = None,
    commit: bool = True,
) -> CouponUsage:
    """
    Redeem one use of `coupon`.

    The increment is a single guarded UPDATE carrying the activity flag,
    the global cap and the per-user limit. When it matches no row the
    redemption lost a race (or the coupon was retired) and
    ConsistencyViolation is raised with nothing written.
    """
    per_user_count = (
        select(func.count(CouponUsage.id))
        .where(CouponUsage.coupon_id == coupon.id, CouponUsage.user_id == user_id)
        .scalar_subquery()
    )
    applied = guarded_update(
        Coupon,
        [
            Coupon.id == coupon.id,
            Coupon.is_active.is_(True),
            or_(
                Coupon.total_usage_limit.is_(None),
                Coupon.current_usage_count < Coupon.total_usage_limit,
            ),
            or_(
                Coupon.per_user_usage_limit.is_(None),
                per_user_count < Coupon.per_user_usage_limit,
            ),
        ],
        {
            "current_usage_count": Coupon.current_usage_count + 1,
            "updated_at": utcnow(),
        },
    )
    if not applied:
        if commit:
            db.session.rollback()
        raise ConsistencyViolation(REASON_EXHAUSTED)

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        order_id=order_id,
        order_amount=to_money(order_amount, "order_amount"),
        discount_amount=to_money(discount_amount, "discount_amount"),
    )
    db.session.add(usage)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    db.session.refresh(coupon)
    return usage


# -------------------------
# Management
# -------------------------

def _validate_code(code: str) -> str:
    code = normalize_code(code)
    if not (CODE_MIN_LENGTH <= len(code) <= CODE_MAX_LENGTH):
        raise ValidationError(f"Coupon code must be {CODE_MIN_LENGTH}-{CODE_MAX_LENGTH} characters")
    if not code.isalnum():
        raise ValidationError("Coupon code may only contain letters and digits")
    return code


def _optional_limit(value, field: str) -> int | None:
    if value is None:
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if limit < 1:
        raise ValidationError(f"{field} must be at least 1")
    return limit


def _check_rules(coupon: Coupon) -> None:
    if coupon.coupon_type not in COUPON_TYPES:
        raise ValidationError(f"Invalid coupon type. Must be one of: {', '.join(COUPON_TYPES)}")
    value = Decimal(coupon.value)
    if value <= ZERO:
        raise ValidationError("Coupon value must be positive")
    if coupon.coupon_type == COUPON_PERCENTAGE and value > 100:
        raise ValidationError("Percentage discount cannot exceed 100%")
    if Decimal(coupon.minimum_order_amount or 0) < ZERO:
        raise ValidationError("minimum_order_amount cannot be negative")
    if coupon.maximum_discount_amount is not None and Decimal(coupon.maximum_discount_amount) < ZERO:
        raise ValidationError("maximum_discount_amount cannot be negative")
    if coupon.expires_at is None:
        raise ValidationError("expires_at is required")
    if coupon.starts_at is not None and coupon.expires_at <= coupon.starts_at:
        raise ValidationError("expires_at must be after starts_at")
    if coupon.total_usage_limit is not None and coupon.total_usage_limit < (coupon.current_usage_count or 0):
        raise ValidationError("total_usage_limit cannot be below the current usage count")
    if not (coupon.title or "").strip():
        raise ValidationError("title is required")


def _check_product_scope(shop_id: int | None, product_ids: list) -> list[int]:
    try:
        ids = [int(p) for p in (product_ids or [])]
    except (TypeError, ValueError):
        raise ValidationError("applicable_products must be product ids")
    if ids and shop_id is not None:
        owned = {
            row[0]
            for row in db.session.query(Product.id)
            .filter(Product.id.in_(ids), Product.shop_id == shop_id)
            .all()
        }
        if owned != set(ids):
            raise ValidationError("Some products do not belong to this shop")
    return ids


def _check_creator(creator: User, shop_id: int | None) -> None:
    if shop_id is None:
        if creator.role != "admin":
            raise ValidationError("Only admins can create platform-wide coupons")
        return
    shop = db.session.get(Shop, shop_id)
    if shop is None:
        raise NotFoundError("Shop not found")
    if creator.role != "admin" and shop.owner_id != creator.id:
        raise ValidationError("You can only create coupons for your own shop")


def create_coupon(data: dict, created_by_user_id: int) -> Coupon:
    creator = db.session.get(User, created_by_user_id)
    if creator is None:
        raise NotFoundError("User not found")

    shop_id = data.get("shop_id")
    _check_creator(creator, shop_id)

    code = _validate_code(data.get("code") or "")
    if get_coupon_by_code(code) is not None:
        raise ValidationError("Coupon code already exists")

    coupon = Coupon(
        code=code,
        coupon_type=data.get("type"),
        value=to_money(data.get("value"), "value"),
        shop_id=shop_id,
        created_by_user_id=creator.id,
        title=(data.get("title") or "").strip(),
        description=data.get("description"),
        minimum_order_amount=to_money(data.get("minimum_order_amount") or 0, "minimum_order_amount"),
        maximum_discount_amount=(
            to_money(data["maximum_discount_amount"], "maximum_discount_amount")
            if data.get("maximum_discount_amount") is not None
            else None
        ),
        applicable_categories=list(data.get("applicable_categories") or []),
        applicable_products=_check_product_scope(shop_id, data.get("applicable_products")),
        total_usage_limit=_optional_limit(data.get("total_usage_limit"), "total_usage_limit"),
        per_user_usage_limit=_optional_limit(data.get("per_user_usage_limit", 1), "per_user_usage_limit"),
        current_usage_count=0,
        is_active=bool(data.get("is_active", True)),
        starts_at=parse_iso_datetime(data.get("starts_at")) or utcnow(),
        expires_at=parse_iso_datetime(data.get("expires_at")),
    )
    _check_rules(coupon)

    db.session.add(coupon)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError("Coupon code already exists")

    current_app.logger.info("Coupon %s created by user %s", coupon.code, creator.id)
    return coupon


def _apply_updates(coupon: Coupon, data: dict) -> None:
    if "code" in data:
        code = _validate_code(data["code"])
        existing = get_coupon_by_code(code)
        if existing is not None and existing.id != coupon.id:
            raise ValidationError("Coupon code already exists")
        coupon.code = code
    if "type" in data:
        coupon.coupon_type = data["type"]
    if "value" in data:
        coupon.value = to_money(data["value"], "value")
    if "shop_id" in data:
        coupon.shop_id = data["shop_id"]
    if "title" in data:
        coupon.title = (data["title"] or "").strip()
    if "description" in data:
        coupon.description = data["description"]
    if "minimum_order_amount" in data:
        coupon.minimum_order_amount = to_money(data["minimum_order_amount"] or 0, "minimum_order_amount")
    if "maximum_discount_amount" in data:
        raw = data["maximum_discount_amount"]
        coupon.maximum_discount_amount = to_money(raw, "maximum_discount_amount") if raw is not None else None
    if "applicable_categories" in data:
        coupon.applicable_categories = list(data["applicable_categories"] or [])
    if "applicable_products" in data or "shop_id" in data:
        coupon.applicable_products = _check_product_scope(
            coupon.shop_id, data.get("applicable_products", coupon.applicable_products)
        )
    if "total_usage_limit" in data:
        coupon.total_usage_limit = _optional_limit(data["total_usage_limit"], "total_usage_limit")
    if "per_user_usage_limit" in data:
        coupon.per_user_usage_limit = _optional_limit(data["per_user_usage_limit"], "per_user_usage_limit")
    if "starts_at" in data:
        coupon.starts_at = parse_iso_datetime(data["starts_at"]) or coupon.starts_at
    if "expires_at" in data:
        coupon.expires_at = parse_iso_datetime(data["expires_at"])
    if "is_active" in data:
        coupon.is_active = bool(data["is_active"])


def update_coupon(coupon: Coupon, data: dict) -> Coupon:
    unknown = set(data) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown coupon fields: {', '.join(sorted(unknown))}")

    if coupon.current_usage_count > 0:
        frozen = [key for key in FROZEN_AFTER_USE if key in data]
        if frozen:
            raise ValidationError(f"Cannot modify {', '.join(frozen)} after the coupon has been used")

    try:
        _apply_updates(coupon, data)
        _check_rules(coupon)
    except ValidationError:
        db.session.rollback()
        raise

    db.session.commit()
    return coupon


def retire_coupon(coupon: Coupon) -> Coupon:
    coupon.is_active = False
    db.session.commit()
    current_app.logger.info("Coupon %s retired", coupon.code)
    return coupon


def delete_coupon(coupon: Coupon) -> None:
    if coupon.current_usage_count > 0:
        raise ValidationError("Cannot delete a coupon that has been used. Deactivate it instead.")
    db.session.delete(coupon)
    db.session.commit()


def find_valid_for_user(
    user_id: int,
    *,
    order_amount=None,
    shop_id: int | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """
    Coupons the user could apply right now, best saving first.

    Shop-specific coupons are only offered when shop_id is given.
    """
    now = now or utcnow()
    q = db.session.query(Coupon).filter(
        Coupon.is_active.is_(True),
        Coupon.starts_at <= now,
        Coupon.expires_at > now,
        or_(Coupon.total_usage_limit.is_(None), Coupon.current_usage_count < Coupon.total_usage_limit),
    )
    if shop_id is None:
        q = q.filter(Coupon.shop_id.is_(None))
    else:
        q = q.filter(or_(Coupon.shop_id.is_(None), Coupon.shop_id == shop_id))

    amount = to_money(order_amount, "order_amount") if order_amount is not None else None
    offers = []
    for coupon in q.order_by(Coupon.created_at.desc()).all():
        if amount is not None and amount < Decimal(coupon.minimum_order_amount or 0):
            continue
        if coupon.per_user_usage_limit is not None:
            if count_user_usages(coupon.id, user_id) >= coupon.per_user_usage_limit:
                continue
        savings = calculate_discount(coupon, amount) if amount is not None else None
        offers.append({
            "coupon": coupon.to_dict(),
            "potential_savings": str(savings) if savings is not None else None,
        })

    if amount is not None:
        offers.sort(key=lambda o: Decimal(o["potential_savings"]), reverse=True)
    return offers


def generate_unique_code(length: int = 6, *, attempts: int = 20) -> str:
    if not (CODE_MIN_LENGTH <= length <= CODE_MAX_LENGTH):
        raise ValidationError(f"Code length must be {CODE_MIN_LENGTH}-{CODE_MAX_LENGTH}")
    for _ in range(attempts):
        code = "".join(secrets.choice(GENERATED_CODE_ALPHABET) for _ in range(length))
        if get_coupon_by_code(code) is None:
            return code
    raise ConsistencyViolation("Could not generate a unique coupon code")


def usage_stats(coupon: Coupon) -> dict:
    total_discount, total_order_amount, unique_users = (
        db.session.query(
            func.coalesce(func.sum(CouponUsage.discount_amount), 0),
            func.coalesce(func.sum(CouponUsage.order_amount), 0),
            func.count(func.distinct(CouponUsage.user_id)),
        )
        .filter(CouponUsage.coupon_id == coupon.id)
        .one()
    )
    uses = coupon.current_usage_count or 0
    total_discount = to_money(total_discount)

    usage_day = func.date(CouponUsage.used_at)
    by_day = (
        db.session.query(usage_day, func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon.id)
        .group_by(usage_day)
        .order_by(usage_day.asc())
        .all()
    )
    top_users = (
        db.session.query(CouponUsage.user_id, func.count(CouponUsage.id).label("uses"))
        .filter(CouponUsage.coupon_id == coupon.id)
        .group_by(CouponUsage.user_id)
        .order_by(func.count(CouponUsage.id).desc(), CouponUsage.user_id.asc())
        .limit(10)
        .all()
    )
    return {
        "code": coupon.code,
        "total_uses": uses,
        "unique_users": int(unique_users),
        "total_discount_given": str(total_discount),
        "total_order_amount": str(to_money(total_order_amount)),
        "average_discount": str(to_money(total_discount / uses)) if uses else "0.00",
        "usage_percentage": round(coupon.usage_percentage, 2),
        "remaining_uses": (
            max(coupon.total_usage_limit - uses, 0) if coupon.total_usage_limit is not None else None
        ),
        "usage_by_day": [{"date": str(day), "count": int(count)} for day, count in by_day],
        "top_users": [{"user_id": user_id, "uses": int(count)} for user_id, count in top_users],
    }


def deactivate_expired_coupons(now: datetime | None = None) -> int:
    """Flip is_active off for every coupon whose window has closed."""
    now = now or utcnow()
    result = db.session.execute(
        update(Coupon)
        .where(Coupon.is_active.is_(True), Coupon.expires_at <= now)
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    count = result.rowcount or 0
    if count:
        current_app.logger.info("Deactivated %s expired coupons", count)
    return count
