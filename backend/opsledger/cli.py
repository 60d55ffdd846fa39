# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/opsledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Lot inspection:
# - python -m flask lots list --type raw_material [--all]
#   List lots with cached availability (use --all to include archived lots).
#
# Ledger inspection:
# - python -m flask ledger balance raw_material 1 [--as-of 2025-01-31]
#   Print the as-of balance computed from movements.
# - python -m flask ledger trail raw_material 1
#   Print every movement of a lot with the running balance.
#
# Maintenance:
# - python -m flask maintenance reconcile-balances [--fix]
#   Compare cached quantity_available with the ledger; --fix overwrites divergent caches.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models.inventory import ITEM_TYPES
from .services import lot_service, maintenance_service, stock_ledger_service
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables. Existing tables and data are left untouched."""
    db.create_all()
    click.echo("PASS Database tables ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('lots')
def lots_group():
    """Lot inspection commands."""


@lots_group.command('list')
@click.option('--type', 'lot_type', type=click.Choice(ITEM_TYPES), required=True, help='Lot type')
@click.option('--all', 'include_archived', is_flag=True, help='Include archived lots')
@with_appcontext
def list_lots(lot_type, include_archived):
    """List lots of one type."""
    lots = lot_service.list_lots(lot_type, include_archived=include_archived)
    if not lots:
        click.echo("No lots found.")
        return

    click.echo(f"\n{'ID':<6} {'Code':<12} {'Name':<28} {'Available':>12} {'Unit':<8} {'Received':<12} {'Archived'}")
    click.echo("-" * 90)
    for lot in lots:
        click.echo(
            f"{lot.id:<6} {lot.lot_code:<12} {lot.name[:28]:<28} {str(lot.quantity_available):>12} "
            f"{lot.unit:<8} {lot.received_date.isoformat():<12} {'yes' if lot.is_archived else 'no'}"
        )
    click.echo(f"\nTotal: {len(lots)} lot(s)")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection commands."""


@ledger_group.command('balance')
@click.argument('lot_type', type=click.Choice(ITEM_TYPES))
@click.argument('lot_id', type=int)
@click.option('--as-of', 'as_of', help='Business date (YYYY-MM-DD), default today')
@with_appcontext
def ledger_balance(lot_type, lot_id, as_of):
    """Print the as-of balance of a lot."""
    lot = stock_ledger_service.get_lot_or_404(lot_type, lot_id)
    balance = stock_ledger_service.get_balance(lot_type, lot.id, parse_iso_date(as_of))
    click.echo(f"{lot.lot_code}: {balance} {lot.unit} (cached: {lot.quantity_available})")


@ledger_group.command('trail')
@click.argument('lot_type', type=click.Choice(ITEM_TYPES))
@click.argument('lot_id', type=int)
@with_appcontext
def ledger_trail(lot_type, lot_id):
    """Print a lot's movements in canonical order with the running balance."""
    lot = stock_ledger_service.get_lot_or_404(lot_type, lot_id)
    trail = stock_ledger_service.get_running_balance_trail(lot_type, lot.id)
    if not trail:
        click.echo(f"{lot.lot_code}: no movements.")
        return

    click.echo(f"\n{lot.lot_code} ({lot.name}, {lot.unit})")
    click.echo(f"{'Effective':<12} {'Recorded':<26} {'Type':<13} {'Change':>12} {'Balance':>12}  Notes")
    click.echo("-" * 100)
    for row in trail:
        click.echo(
            f"{row['effective_date']:<12} {row['recorded_at']:<26} {row['movement_type']:<13} "
            f"{row['signed_quantity']:>12} {row['balance_after']:>12}  {row['notes'] or ''}"
        )


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('reconcile-balances')
@click.option('--fix', is_flag=True, help='Overwrite divergent caches with the ledger balance')
@with_appcontext
def reconcile_balances_cli(fix):
    """Compare every lot's cached quantity_available with its ledger balance."""
    divergent = maintenance_service.reconcile_cached_balances(fix=fix)
    if not divergent:
        click.echo("PASS All cached balances match the ledger.")
        return

    for row in divergent:
        click.echo(
            f"DIFF {row['lot_type']} {row['lot_code']}: cached={row['cached']} ledger={row['ledger']}"
        )
    if fix:
        click.echo(f"FIXED {len(divergent)} lot(s).")
    else:
        click.echo(f"WARN {len(divergent)} lot(s) diverge. Re-run with --fix to repair.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(lots_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(maintenance_group)
