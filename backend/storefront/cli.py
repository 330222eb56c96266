# Overview: Flask CLI command groups for bootstrap, scheduled sweeps, and stock inspection.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migration-managed databases).
# - python -m flask system seed-demo
#   Idempotent demo catalog: an admin, a student, a sized shirt and a plain mug.
#
# Users:
# - python -m flask users create --name "Ana Cruz" --email ana@campus.local --role student
#   Create a user.
# - python -m flask users issue-token --email ana@campus.local
#   Print a bearer token for the user (for API clients and load tests).
#
# Orders (run from cron or another scheduler):
# - python -m flask orders expire-pending [--older-than 1440]
#   Cancel unpaid orders older than the window and restore their stock.
#
# Inventory:
# - python -m flask inventory reconcile
#   Replay the stock movement log against current stock; exits 1 on drift.
# - python -m flask inventory low-stock
#   List stock units at or below their low-stock threshold.

import sys
from decimal import Decimal

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, Category, Product, ProductVariant
from .models.auth import ROLE_ADMIN, ROLE_STUDENT
from .services import inventory_service, payment_service, session_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created")


def _get_or_create_user(name: str, email: str, role: str) -> User:
    user = db.session.query(User).filter_by(email=email).first()
    if user:
        return user
    user = User(name=name, email=email, role=role, is_active=True)
    db.session.add(user)
    db.session.flush()
    return user


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Seed a small demo catalog.

    Opening stock is recorded through the ledger (stock_in) so that
    `inventory reconcile` passes on a fresh database.
    """
    _get_or_create_user("Store Admin", "admin@campus.local", ROLE_ADMIN)
    student = _get_or_create_user("Demo Student", "student@campus.local", ROLE_STUDENT)

    category = db.session.query(Category).filter_by(name="Apparel").first()
    if not category:
        category = Category(name="Apparel")
        db.session.add(category)
        db.session.flush()

    opening = []
    shirt = db.session.query(Product).filter_by(name="Campus Shirt").first()
    if not shirt:
        shirt = Product(name="Campus Shirt", price=Decimal("450.00"), category_id=category.id, stock=0)
        db.session.add(shirt)
        db.session.flush()
        for size in ("S", "M", "L"):
            variant = ProductVariant(product_id=shirt.id, size=size, stock=0)
            db.session.add(variant)
            db.session.flush()
            opening.append((shirt.id, variant.id, 20))

    mug = db.session.query(Product).filter_by(name="Campus Mug").first()
    if not mug:
        mug = Product(name="Campus Mug", price=Decimal("180.00"), category_id=category.id, stock=0, reorder_point=3)
        db.session.add(mug)
        db.session.flush()
        opening.append((mug.id, None, 12))

    db.session.commit()

    for product_id, variant_id, quantity in opening:
        inventory_service.restock(
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            reason="Opening stock",
            actor_user_id=None,
        )

    click.echo(f"PASS Demo data ready ({len(opening)} stock unit(s) opened, student id {student.id})")


@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--student-id', default=None, help='Student number')
@click.option('--role', type=click.Choice([ROLE_ADMIN, ROLE_STUDENT]), default=ROLE_STUDENT, help='Role')
@with_appcontext
def create_user_cli(name, email, student_id, role):
    """Create a user."""
    if db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL User with email {email} already exists")
        sys.exit(1)

    user = User(name=name, email=email, student_id=student_id, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {name} ({email}) with role '{role}' (ID: {user.id})")


@users_group.command('issue-token')
@click.option('--email', required=True, help='Email of the user')
@with_appcontext
def issue_token_cli(email):
    """Issue a bearer token and print it."""
    user = db.session.query(User).filter_by(email=email).first()
    if not user:
        click.echo(f"FAIL User {email} not found")
        sys.exit(1)
    try:
        _, token = session_service.create_session(user.id)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        sys.exit(1)
    click.echo(token)


@click.group('orders')
def orders_group():
    """Order maintenance commands."""


@orders_group.command('expire-pending')
@click.option('--older-than', 'older_than', type=int, default=None,
              help='Minutes (defaults to PENDING_ORDER_TTL_MINUTES)')
@with_appcontext
def expire_pending_cli(older_than):
    """Cancel stale unpaid orders and restore their stock."""
    summary = payment_service.expire_pending_orders(older_than)
    click.echo(
        f"PASS Expired {len(summary['expired'])} order(s) older than {summary['cutoff_minutes']} minutes"
    )
    for order_id in summary["failed"]:
        click.echo(f"WARN Could not expire order {order_id}")


@click.group('inventory')
def inventory_group():
    """Stock inspection commands."""


@inventory_group.command('reconcile')
@with_appcontext
def reconcile_cli():
    """Replay movements for every stock unit and report drift."""
    reports = inventory_service.reconcile_all()
    bad = [r for r in reports if not r.is_consistent]
    for report in bad:
        label = f"product {report.product_id}"
        if report.variant_id is not None:
            label += f" size {report.variant_id}"
        click.echo(f"FAIL {label}: stock {report.current_stock}, replayed {report.replayed_stock}")
        for brk in report.breaks:
            click.echo(f"     {brk}")
    click.echo(f"{'FAIL' if bad else 'PASS'} Checked {len(reports)} stock unit(s), {len(bad)} inconsistent")
    if bad:
        sys.exit(1)


@inventory_group.command('low-stock')
@with_appcontext
def low_stock_cli():
    """List stock units at or below threshold."""
    alerts = inventory_service.low_stock_report()
    if not alerts:
        click.echo("PASS No low stock")
        return
    for alert in alerts:
        size = f" ({alert['size']})" if alert["size"] else ""
        click.echo(f"{alert['alert_level']:<8} {alert['name']}{size}: {alert['stock']} (threshold {alert['threshold']})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(inventory_group)
