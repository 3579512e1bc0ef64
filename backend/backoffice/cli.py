# Overview: Flask CLI command groups for bootstrap and inventory inspection.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to the factory (bash: export FLASK_APP="backoffice:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent). Use `flask db upgrade` for migrations.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory inspection/repair:
# - python -m flask inventory check
#   Verify available == on_hand - reserved, no negative counters, and
#   Product.stock == quantity_on_hand for every record.
# - python -m flask inventory check --fix
#   Same, and rewrite Product.stock from the ledger where it drifted.
# - python -m flask inventory low-stock [--threshold 5]
#   Print records at or below their reorder point (or the threshold).

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


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


@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection commands."""


@inventory_group.command('check')
@click.option('--fix', is_flag=True, help='Rewrite Product.stock from quantity_on_hand')
@with_appcontext
def check_inventory(fix):
    """Verify ledger counters and the product stock mirror."""
    problems = inventory_service.audit_records(fix_mirror=fix)
    if not problems:
        click.echo("PASS All inventory records are consistent.")
        return

    for problem in problems:
        detail = ", ".join(f"{k}={v}" for k, v in problem.items() if k not in ("product_id", "problem"))
        click.echo(f"FAIL product {problem['product_id']}: {problem['problem']} {detail}".rstrip())

    if fix:
        fixed = sum(1 for p in problems if p["problem"] == "stock_mirror_mismatch")
        click.echo(f"FIXED {fixed} stock mirror value(s).")
        remaining = [p for p in problems if p["problem"] != "stock_mirror_mismatch"]
        if remaining:
            raise SystemExit(1)
    else:
        raise SystemExit(1)


@inventory_group.command('low-stock')
@click.option('--threshold', type=int, default=None, help='Use a fixed threshold instead of each reorder point')
@with_appcontext
def low_stock(threshold):
    """List records at or below their reorder point."""
    records = inventory_service.list_low_stock(threshold)
    if not records:
        click.echo("No low-stock products.")
        return

    click.echo(f"{'PRODUCT':>8}  {'SKU':<16} {'AVAIL':>6} {'REORDER':>8}  NAME")
    for record in records:
        product = record.product
        click.echo(
            f"{record.product_id:>8}  {(product.sku if product else ''):<16} "
            f"{record.quantity_available:>6} {record.reorder_point:>8}  {product.name if product else ''}"
        )


def register_commands(app):
    """Register CLI command groups with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
