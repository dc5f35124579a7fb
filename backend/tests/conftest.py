"""
Pytest fixtures for the order flow backend.

Provides an in-memory database, seeded accounts/shop/products, a recording
notifier and a scriptable mock payments gateway wired into a fresh service
graph for every test.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from taja import create_app
from taja.extensions import db
from taja.integrations.payments.mock_provider import MockPaymentsGateway
from taja.models import Coupon, Product, Shop, User
from taja.services.notifications import Notifier
from taja.services.order_flow import EXTENSION_KEY, build_order_flow
from taja.time_utils import utcnow


class RecordingNotifier(Notifier):
    """Collects emitted events in order."""

    def __init__(self):
        self.events = []

    def notify(self, event_type, payload):
        self.events.append((event_type, dict(payload)))

    def of_type(self, event_type):
        return [payload for name, payload in self.events if name == event_type]

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PAYMENTS_PROVIDER': 'mock',
        'FLUTTERWAVE_WEBHOOK_HASH': '',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope='function')
def gateway():
    return MockPaymentsGateway()


@pytest.fixture(scope='function')
def flow(app, db_session, gateway, notifier):
    """Fresh service graph bound to the mock gateway and recording notifier."""
    order_flow = build_order_flow(gateway, notifier)
    app.extensions[EXTENSION_KEY] = order_flow
    return order_flow


@pytest.fixture(scope='function')
def buyer(db_session):
    user = User(full_name="Ada Buyer", email="buyer@taja.test", phone="+2348000000001", role="buyer")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_buyer(db_session):
    user = User(full_name="Bola Buyer", email="buyer2@taja.test", role="buyer")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def seller(db_session):
    user = User(full_name="Chidi Seller", email="seller@taja.test", phone="+2348000000002", role="seller")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    user = User(full_name="Platform Admin", email="admin@taja.test", role="admin")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def shop(db_session, seller):
    shop = Shop(owner_id=seller.id, shop_name="Chidi Gadgets", shop_slug="chidi-gadgets")
    db_session.add(shop)
    db_session.commit()
    return shop


@pytest.fixture(scope='function')
def products(db_session, shop):
    phone = Product(shop_id=shop.id, title="Phone", category="electronics", price=Decimal("15000.00"))
    shirt = Product(shop_id=shop.id, title="Shirt", category="fashion", price=Decimal("5000.00"))
    db_session.add_all([phone, shirt])
    db_session.commit()
    return [phone, shirt]


@pytest.fixture(scope='function')
def make_order(flow, buyer, shop, products):
    """Factory: a pending order for `buyer` with one phone (15000) by default."""
    def _make(quantity=1, product=None, buyer_id=None, shipping_cost=0, tax=0):
        product = product or products[0]
        return flow.ledger.create_order(
            buyer_id=buyer_id or buyer.id,
            shop_id=shop.id,
            items=[{"product_id": product.id, "quantity": quantity}],
            shipping_address={"street": "1 Marina", "city": "Lagos", "state": "Lagos", "country": "Nigeria"},
            payment_method="card",
            shipping_cost=shipping_cost,
            tax=tax,
        )
    return _make


@pytest.fixture(scope='function')
def make_coupon(db_session, admin):
    """Factory: persisted coupon valid from yesterday for thirty days."""
    def _make(code="SAVE10", **overrides):
        now = utcnow()
        fields = {
            "code": code,
            "coupon_type": "percentage",
            "value": Decimal("10"),
            "title": f"{code} promo",
            "created_by_user_id": admin.id,
            "minimum_order_amount": Decimal("0"),
            "applicable_categories": [],
            "applicable_products": [],
            "per_user_usage_limit": 1,
            "starts_at": now - timedelta(days=1),
            "expires_at": now + timedelta(days=30),
        }
        fields.update(overrides)
        coupon = Coupon(**fields)
        db_session.add(coupon)
        db_session.commit()
        return coupon
    return _make


@pytest.fixture(scope='function')
def advance(flow):
    """Walk an order through the given statuses."""
    def _advance(order, *statuses):
        for status in statuses:
            flow.ledger.transition(order, status)
        return order
    return _advance


@pytest.fixture(scope='function')
def deliver(advance):
    def _deliver(order):
        return advance(order, "confirmed", "processing", "shipped", "delivered")
    return _deliver
