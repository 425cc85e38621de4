# Overview: Flask CLI command groups for account administration and maintenance.

# backend/marketplace/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Database:
# - python -m flask db upgrade
#   Apply Alembic migrations (Flask-Migrate).
#
# Accounts:
# - python -m flask users list
#   List accounts with role and status.
# - python -m flask users create --email admin@example.com --password "Password123!" --role Admin
#   Create an account (prompts if options are omitted).
# - python -m flask users promote-seller buyer@example.com
#   Turn an account into an approved seller.
# - python -m flask users soft-delete buyer@example.com --yes
#   Hide an account and revoke all of its tokens.
#
# Maintenance:
# - python -m flask maintenance cleanup-tokens --retention-days 30
#   Delete expired/revoked refresh tokens and sessions older than the window.
# - python -m flask maintenance cleanup-oauth-states
#   Delete expired OAuth state records.
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import MarketplaceError
from .extensions import db
from .models import User
from .models.identity import ROLE_ADMIN, ROLE_BUYER, ROLE_SELLER
from .services import auth_service
from .services import maintenance_service


@click.group('users')
def users_group():
    """Account administration commands."""


@users_group.command('list')
@click.option('--include-deleted', is_flag=True, help='Also list soft-deleted accounts')
@with_appcontext
def list_users(include_deleted):
    query = db.session.query(User)
    if not include_deleted:
        query = query.filter(User.is_deleted.is_(False))
    users = query.order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo(f"\n{'ID':<6} {'Email':<35} {'Role':<8} {'Seller':<7} {'Status':<8}")
    click.echo("-" * 68)
    for user in users:
        status = "deleted" if user.is_deleted else "active"
        seller = "yes" if user.is_seller_approved else "no"
        click.echo(f"{user.id:<6} {user.email:<35} {user.role:<8} {seller:<7} {status:<8}")
    click.echo("")


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--display-name', default=None, help='Display name')
@click.option('--role', type=click.Choice([ROLE_BUYER, ROLE_SELLER, ROLE_ADMIN]), default=ROLE_BUYER, show_default=True)
@with_appcontext
def create_user_cli(email, password, display_name, role):
    """
    Create an account with a local password.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = auth_service.create_user(
            email=email,
            password=password,
            display_name=display_name,
            role=role,
            is_verified=True,
        )
        click.echo(f"PASS Created user: {user.email} (ID: {user.id}) with role '{user.role}'")
    except MarketplaceError as e:
        db.session.rollback()
        raise click.ClickException(e.message)


@users_group.command('promote-seller')
@click.argument('email')
@with_appcontext
def promote_seller_cli(email):
    try:
        user = auth_service.get_user_by_email(email)
        auth_service.promote_to_seller(user.id)
        click.echo(f"PASS {user.email} is now an approved seller")
    except MarketplaceError as e:
        raise click.ClickException(e.message)


@users_group.command('soft-delete')
@click.argument('email')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def soft_delete_cli(email, yes):
    """Hide an account from every flow and revoke all of its tokens."""
    if not yes:
        click.confirm(f"WARN Soft-delete {email}?", abort=True)
    try:
        user = auth_service.get_user_by_email(email)
        auth_service.soft_delete_user(user.id)
        click.echo(f"PASS Soft-deleted {user.email}")
    except MarketplaceError as e:
        raise click.ClickException(e.message)


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-tokens')
@click.option('--retention-days', type=int, default=None, help='Defaults to TOKEN_RETENTION_DAYS')
@with_appcontext
def cleanup_tokens_cli(retention_days):
    """Delete expired or revoked refresh tokens and sessions past the retention window."""
    if retention_days is None:
        retention_days = current_app.config["TOKEN_RETENTION_DAYS"]
    result = maintenance_service.cleanup_tokens(retention_days=retention_days)
    click.echo(
        f"Deleted {result['refresh_tokens_deleted']} refresh tokens and "
        f"{result['sessions_deleted']} sessions older than {retention_days} days."
    )


@maintenance_group.command('cleanup-oauth-states')
@with_appcontext
def cleanup_oauth_states_cli():
    deleted = maintenance_service.cleanup_oauth_states()
    click.echo(f"Deleted {deleted} expired OAuth states.")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
