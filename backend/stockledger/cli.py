# Overview: Flask CLI command groups for setup, inspection and scheduled checks.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Ledger setup/inspection:
# - python -m flask ledger init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for migrations).
# - python -m flask ledger reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask ledger seed-demo
#   Create demo products/sizes and receive opening stock through the ledger.
# - python -m flask ledger verify-replay
#   Check that every stock row equals the sum of its history; exit 1 on mismatch.
# - python -m flask ledger low-stock [--threshold 5]
#   List rows below the low-stock threshold.
#
# Orders:
# - python -m flask orders check-delayed
#   Emit order_delayed notifications for pending orders past their expected arrival.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models.stock import REASON_ADJUSTMENT
from .services import catalog_service, order_service
from .services.errors import LedgerError
from .services.history_service import verify_replay
from .services.stock_ledger import StockLedger
from .services.transaction_coordinator import Reference, get_coordinator


DEMO_PRODUCTS = [
    ("TEE-BLK", "Black T-Shirt", 1500),
    ("TEE-WHT", "White T-Shirt", 1500),
    ("HOOD-GRY", "Grey Hoodie", 4500),
]
DEMO_SIZES = [("S", 1), ("M", 2), ("L", 3)]


@click.group('ledger')
def ledger_group():
    """Stock ledger setup and inspection commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created")


@ledger_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the inventory history!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()
    click.echo("DONE Database reset")


@ledger_group.command('seed-demo')
@click.option('--quantity', default=10, show_default=True, help='Opening stock per product/size')
@with_appcontext
def seed_demo(quantity):
    """Create demo catalog entries and opening stock (idempotent for the catalog)."""
    sizes = [catalog_service.get_or_create_size(name, sort_order) for name, sort_order in DEMO_SIZES]

    products = []
    for sku, name, price_cents in DEMO_PRODUCTS:
        existing = [p for p in catalog_service.list_products(active_only=False) if p.sku == sku]
        products.append(existing[0] if existing else catalog_service.create_product(
            sku=sku, name=name, price_cents=price_cents,
        ))
    click.echo(f"PASS Catalog ready: {len(products)} products x {len(sizes)} sizes")

    if quantity <= 0:
        return

    rows = [(product.id, size.id, quantity) for product in products for size in sizes]
    try:
        result = get_coordinator().submit(
            REASON_ADJUSTMENT,
            rows,
            Reference("seed"),
            actor="cli",
            note="Opening stock",
        )
    except LedgerError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Opening stock recorded in batch {result.batch_id} ({len(result.entries)} entries)")


@ledger_group.command('verify-replay')
@with_appcontext
def verify_replay_command():
    """Fail if any stock row disagrees with the sum of its history."""
    problems = verify_replay()
    if not problems:
        click.echo("PASS Stock matches history for every row")
        return

    for problem in problems:
        chain = "" if problem["chain_intact"] else " (chain broken)"
        click.echo(
            f"FAIL product={problem['product_id']} size={problem['size_id']} "
            f"stock={problem['stock']} replayed={problem['replayed']}{chain}"
        )
    raise SystemExit(1)


@ledger_group.command('low-stock')
@click.option('--threshold', type=int, default=None, help='Defaults to LOW_STOCK_THRESHOLD')
@with_appcontext
def low_stock(threshold):
    """List (product, size) rows below the threshold."""
    if threshold is None:
        threshold = current_app.config["LOW_STOCK_THRESHOLD"]
    records = StockLedger().low_stock(threshold)
    if not records:
        click.echo(f"No rows below {threshold}")
        return
    click.echo(f"{'PRODUCT':<30} {'SIZE':<8} {'STOCK':>6}")
    click.echo("-" * 46)
    for record in records:
        click.echo(f"{record.product.name:<30} {record.size.name:<8} {record.stock:>6}")


@click.group('orders')
def orders_group():
    """Supplier order maintenance commands."""


@orders_group.command('check-delayed')
@with_appcontext
def check_delayed():
    """Dispatch order_delayed notifications; meant to run from a scheduler."""
    intents = order_service.notify_delayed_orders()
    for intent in intents:
        click.echo(f"WARN {intent.message}")
    click.echo(f"DONE {len(intents)} delayed order(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
    app.cli.add_command(orders_group)
