# Overview: Flask CLI command groups for bootstrap and gateway maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: flask --app storefront <group> <command> [options]
#
# Store bootstrap:
# - flask --app storefront store init-db
#   Create all tables (idempotent; use Flask-Migrate for schema changes).
# - flask --app storefront store seed-demo
#   Insert a small demo catalog, one category sale and one promo code.
#
# Payment gateway:
# - flask --app storefront qpay warm-token
#   Fetch a QPay access token into this process's cache and print its expiry.

import click
from datetime import datetime, timezone
from decimal import Decimal
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Category, Product, PromoCode, Sale
from .models.targets import AllTarget, CategoryTarget
from .services.qpay_client import ExternalServiceError


@click.group('store')
def store_group():
    """Database bootstrap commands."""


@store_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@store_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Seed a demo catalog.

    Creates two categories, three products, a 20% category sale and the
    promo code WELCOME1000 (fixed 1000 off, minimum purchase 10000).
    Skips seeding when products already exist.
    """
    if db.session.query(Product).count():
        click.echo("SKIP Products already exist, nothing seeded")
        return

    apparel = Category(name="Apparel")
    home = Category(name="Home")
    db.session.add_all([apparel, home])
    db.session.flush()

    db.session.add_all([
        Product(name="Cashmere scarf", price=Decimal("10000"), categories=[apparel]),
        Product(name="Wool hat", price=Decimal("25000"), categories=[apparel]),
        Product(name="Felt slippers", price=Decimal("45000"), categories=[home]),
    ])
    db.session.add(Sale(
        title="Apparel week",
        target=CategoryTarget(apparel.id),
        discount_type="percentage",
        discount_value=Decimal("20"),
        badge_text="-20%",
    ))
    db.session.add(PromoCode(
        code="WELCOME1000",
        description="1000 off orders over 10000",
        discount_type="fixed",
        discount_value=Decimal("1000"),
        target=AllTarget(),
        min_purchase_amount=Decimal("10000"),
    ))
    db.session.commit()
    click.echo("PASS Seeded 2 categories, 3 products, 1 sale, 1 promo code")


@click.group('qpay')
def qpay_group():
    """Payment gateway commands."""


@qpay_group.command('warm-token')
@with_appcontext
def warm_token():
    """Authenticate against QPay and report the token expiry."""
    client = current_app.extensions["qpay"]
    try:
        client.get_access_token()
    except ExternalServiceError as e:
        raise click.ClickException(f"FAIL Could not obtain QPay token: {e}")
    expires = datetime.fromtimestamp(client.expires_at, tz=timezone.utc)
    click.echo(f"PASS QPay token cached until {expires.isoformat()}")


def register_commands(app):
    app.cli.add_command(store_group)
    app.cli.add_command(qpay_group)
