from .accounts import User, Shop, Product
from .orders import Order, OrderItem, OrderTimelineEntry
from .coupons import Coupon, CouponUsage
from .journal import Transaction
from .webhooks import WebhookEvent

__all__ = [
    'User', 'Shop', 'Product',
    'Order', 'OrderItem', 'OrderTimelineEntry',
    'Coupon', 'CouponUsage',
    'Transaction',
    'WebhookEvent',
]
