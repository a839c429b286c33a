# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/rxledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (development; use `flask db upgrade` otherwise).
#
# Alerts:
# - python -m flask alerts refresh [--product-id 12]
#   Re-evaluate alerts for one product or every active product.
#
# Inventory inspection:
# - python -m flask inventory valuation
#   Print retail and cost valuation per product and in total.
# - python -m flask inventory diagnose
#   Report duplicate, zero-cost, zero-quantity and implausibly valued batches.
#
# Maintenance:
# - python -m flask maintenance migrate-data
#   Apply pending versioned data migrations (each runs once per database).

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import alert_service
from .services import maintenance_service
from .services import valuation_service


def _money(cents: int) -> str:
    return f"{cents / 100:,.2f}"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db_cli():
    """Create missing tables (idempotent)."""
    from . import models  # noqa: F401
    db.create_all()
    click.echo("Database tables created.")


@click.group('alerts')
def alerts_group():
    """Stock alert commands."""


@alerts_group.command('refresh')
@click.option('--product-id', type=int, default=None, help='Only this product')
@with_appcontext
def refresh_alerts_cli(product_id):
    """Re-evaluate alerts (deduplicated within the configured window)."""
    created = alert_service.refresh_alerts(product_id=product_id)
    scope = f"product {product_id}" if product_id is not None else "all active products"
    click.echo(f"Created {created} alert(s) for {scope}.")


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('valuation')
@with_appcontext
def valuation_cli():
    """Print retail and cost valuation."""
    result = valuation_service.get_valuation()

    click.echo(f"{'ID':<6} {'Product':<40} {'Qty':>8} {'Retail':>14} {'Cost':>14}")
    click.echo("-" * 86)
    for row in result["per_product"]:
        click.echo(
            f"{row['product_id']:<6} {row['product_name'][:40]:<40} {row['quantity']:>8} "
            f"{_money(row['retail_value_cents']):>14} {_money(row['cost_value_cents']):>14}"
        )
    click.echo("-" * 86)
    click.echo(f"Total retail value: {_money(result['total_retail_value_cents'])}")
    click.echo(f"Total cost value:   {_money(result['total_cost_value_cents'])}")
    if result["excluded_batches"]:
        click.echo(f"Excluded from cost valuation: {len(result['excluded_batches'])} batch(es)")


@inventory_group.command('diagnose')
@with_appcontext
def diagnose_cli():
    """Report batch data-quality issues."""
    report = valuation_service.get_diagnostics()

    click.echo(f"Batches: {report['total_batches']} ({report['unique_batches']} unique)")
    click.echo(f"Value of valid batches: {_money(report['total_value_cents'])}")
    if not report["issues"]:
        click.echo("No issues found.")
        return
    for issue in report["issues"]:
        click.echo(f"  - {issue}")
    for entry in report["suspect_value"][:10]:
        click.echo(
            f"    batch {entry['batch_id']} ({entry['batch_number']}): "
            f"{entry['remaining_quantity']} x {_money(entry['unit_cost_cents'])} = "
            f"{_money(entry['batch_value_cents'])}"
        )


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('migrate-data')
@with_appcontext
def migrate_data_cli():
    """Apply pending versioned data migrations."""
    applied = maintenance_service.run_data_migrations()
    if not applied:
        click.echo("No pending data migrations.")
        return
    for version in applied:
        click.echo(f"Applied {version}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(alerts_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(maintenance_group)
