# Overview: Flask CLI command groups for bootstrap and scheduled maintenance jobs.

# backend/taja/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "taja:create_app".
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev; production uses `flask db upgrade`).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Shop trust (schedule nightly; terminal transitions also trigger it per shop):
# - python -m flask trust recompute [--shop-id 3]
#   Recompute performance metrics and apply the suspension policy.
#
# Coupons:
# - python -m flask coupons deactivate-expired
#   Turn off coupons whose window has closed (schedule hourly).
# - python -m flask coupons generate-code [--length 8]
#   Print an unused coupon code.
#
# Orders:
# - python -m flask orders sync-deliveries [--provider gokada]
#   Pull tracking for shipped orders booked with the provider; confirmed
#   deliveries move the order to delivered (schedule every 15 minutes).

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import ConsistencyViolation, DependencyError, NotFoundError, ValidationError
from .extensions import db
from .integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from .integrations.delivery.factory import build_delivery_provider
from .models import Order
from .services import coupon_service
from .services.order_flow import get_order_flow
from .services.order_service import STATUS_DELIVERED, STATUS_SHIPPED


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('trust')
def trust_group():
    """Shop performance metrics and suspension policy."""


@trust_group.command('recompute')
@click.option('--shop-id', type=int, default=None, help='Only recompute this shop')
@with_appcontext
def recompute(shop_id):
    monitor = get_order_flow().trust
    if shop_id is not None:
        try:
            decisions = [monitor.recompute_metrics(shop_id)]
        except NotFoundError as e:
            raise click.ClickException(e.reason)
    else:
        decisions = monitor.recompute_all()

    for decision in decisions:
        m = decision.metrics
        line = (
            f"shop={decision.shop_id} orders={m.total_orders} cancelled={m.cancelled_orders} "
            f"rate={m.cancellation_rate:.2%} avg_delivery_h={m.average_delivery_time}"
        )
        if decision.action:
            line += f" -> {decision.action.upper()}"
        click.echo(line)
    click.echo(f"DONE {len(decisions)} shop(s) recomputed")


@click.group('coupons')
def coupons_group():
    """Coupon maintenance."""


@coupons_group.command('deactivate-expired')
@with_appcontext
def deactivate_expired():
    count = coupon_service.deactivate_expired_coupons()
    click.echo(f"PASS Deactivated {count} expired coupon(s)")


@coupons_group.command('generate-code')
@click.option('--length', type=int, default=6, show_default=True)
@with_appcontext
def generate_code(length):
    try:
        click.echo(coupon_service.generate_unique_code(length))
    except ValidationError as e:
        raise click.ClickException(e.reason)


@click.group('orders')
def orders_group():
    """Order lifecycle jobs."""


@orders_group.command('sync-deliveries')
@click.option('--provider', 'provider_name', default=None, help='Override DELIVERY_PROVIDER')
@with_appcontext
def sync_deliveries(provider_name):
    try:
        provider = build_delivery_provider(current_app.config, provider_name)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        raise click.ClickException(str(e))

    ledger = get_order_flow().ledger
    orders = (
        db.session.query(Order)
        .filter(
            Order.status == STATUS_SHIPPED,
            Order.delivery_provider == provider.name,
            Order.tracking_number.isnot(None),
        )
        .order_by(Order.id.asc())
        .all()
    )

    delivered = 0
    for order in orders:
        order_number = order.order_number
        try:
            ledger.sync_delivery(order, provider)
        except DependencyError as e:
            current_app.logger.warning("Tracking sync failed for order %s: %s", order_number, e.reason)
            click.echo(f"FAIL {order_number}: {e.reason}")
            continue
        except ConsistencyViolation as e:
            click.echo(f"SKIP {order_number}: {e.reason}")
            continue
        if order.status == STATUS_DELIVERED:
            delivered += 1
            click.echo(f"PASS {order_number} delivered")

    click.echo(f"DONE {len(orders)} shipped order(s) checked, {delivered} delivered")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(trust_group)
    app.cli.add_command(coupons_group)
    app.cli.add_command(orders_group)
