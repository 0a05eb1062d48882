# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/workshop/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list [--role mechanic]
#   List users with role and active status.
# - python -m flask users create --name "Ravi" --mobile 9800000001 --role mechanic
#   Create a user (prompts if options are omitted).
# - python -m flask users issue-token 3
#   Mint a bearer token for a user (printed once, stored hashed).
# - python -m flask users revoke-token <token>
#   Revoke a bearer token.
#
# Stock inspection:
# - python -m flask stock low
#   List active items at or below their minimum stock.
# - python -m flask stock verify-ledger [--item-id 7]
#   Recheck ledger snapshots against cached stock (all items when omitted).
#
# Vehicles:
# - python -m flask vehicles create --owner-id 5 --number KA01AB1234 --brand Maruti --model Swift
#   Register a vehicle to a customer so job cards can be opened for it.
#
# Maintenance:
# - python -m flask outbox dispatch --limit 100
#   Retry pending/failed notifications.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import InventoryItem, User
from .models.auth import ROLES
from .errors import DomainError
from .services import ledger_service, notification_service, session_service, stock_service, vehicle_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--mobile', prompt=True, help='Mobile number (unique)')
@click.option('--email', default=None, help='Email address')
@click.option('--role', type=click.Choice(list(ROLES)), prompt=True, help='Role')
@with_appcontext
def create_user_cli(name, mobile, email, role):
    """Create a workshop user (admin, mechanic or customer)."""
    existing = db.session.query(User).filter_by(mobile=mobile).first()
    if existing:
        click.echo(f"FAIL Mobile {mobile} already belongs to user {existing.id}")
        return

    user = User(name=name, mobile=mobile, email=email, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {name} ({mobile}) with role '{role}'")
    click.echo(f"     User ID: {user.id}")


@users_group.command('list')
@click.option('--role', type=click.Choice(list(ROLES)), default=None, help='Filter by role')
@with_appcontext
def list_users(role):
    """List all users with their roles."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<24} {'Mobile':<16} {'Role':<10} {'Active'}")
    click.echo("="*80)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.name:<24} {user.mobile or '':<16} {user.role:<10} {active_str}")
    click.echo("="*80 + "\n")


@users_group.command('issue-token')
@click.argument('user_id', type=int)
@with_appcontext
def issue_token(user_id):
    """Mint a bearer token for a user."""
    try:
        session, token = session_service.create_session(user_id)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Token for user {user_id} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('revoke-token')
@click.argument('token')
@with_appcontext
def revoke_token(token):
    if session_service.revoke_session(token):
        click.echo("PASS Token revoked")
    else:
        click.echo("FAIL Token not found or already revoked")


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('low')
@with_appcontext
def low_stock():
    """List active items at or below their minimum stock."""
    result = stock_service.low_stock_items()
    if not result["total"]:
        click.echo("PASS No items at or below minimum stock")
        return
    for label, items in (("OUT", result["out_of_stock"]), ("LOW", result["low_stock"])):
        for item in items:
            click.echo(f"{label:<4} {item.sku:<12} {item.name:<32} stock={item.current_stock} min={item.min_stock}")


@stock_group.command('verify-ledger')
@click.option('--item-id', type=int, default=None, help='Check a single item')
@with_appcontext
def verify_ledger(item_id):
    """
    Recheck ledger entries against cached stock.

    Exits non-zero when any item is inconsistent.
    """
    if item_id is not None:
        item_ids = [item_id]
    else:
        item_ids = [row.id for row in db.session.query(InventoryItem.id).order_by(InventoryItem.id)]

    failures = 0
    for iid in item_ids:
        report = ledger_service.verify_item_ledger(iid)
        if report["consistent"]:
            click.echo(f"PASS {report['sku']}: stock={report['current_stock']} entries={report['entry_count']}")
        else:
            failures += 1
            click.echo(
                f"FAIL {report['sku']}: stock={report['current_stock']} "
                f"opening+ledger={report['opening_stock'] + report['ledger_sum']} "
                f"broken={report['broken_entries']}"
            )

    if failures:
        raise click.ClickException(f"{failures} item(s) inconsistent")


@click.group('vehicles')
def vehicles_group():
    """Customer vehicle registry."""


@vehicles_group.command('create')
@click.option('--owner-id', type=int, prompt=True, help='Customer user id')
@click.option('--number', prompt=True, help='Registration number, e.g. KA01AB1234')
@click.option('--brand', prompt=True)
@click.option('--model', prompt=True)
@click.option('--year', type=int, default=None)
@click.option('--color', default=None)
@with_appcontext
def create_vehicle_cli(owner_id, number, brand, model, year, color):
    """Register a vehicle to a customer."""
    try:
        vehicle = vehicle_service.register_vehicle(
            owner_user_id=owner_id,
            vehicle_number=number,
            brand=brand,
            model=model,
            year=year,
            color=color,
        )
    except DomainError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Registered {vehicle.vehicle_number} to customer {owner_id}")
    click.echo(f"     Vehicle ID: {vehicle.id}")


@click.group('outbox')
def outbox_group():
    """Notification outbox maintenance."""


@outbox_group.command('dispatch')
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def dispatch_outbox(limit):
    sent = notification_service.dispatch_pending(limit=limit)
    click.echo(f"PASS Dispatched {sent} notification(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(vehicles_group)
    app.cli.add_command(outbox_group)
