# billing_engine/cli.py
"""Flask CLI commands: ``flask init-db``, ``flask usage rollover``, ``flask billing sync-subscription``."""

import click
from flask import current_app
from flask.cli import AppGroup, with_appcontext

from billing_engine.errors.domain import NotFoundError
from billing_engine.extensions import db
from billing_engine.models.user import User
from billing_engine.workers.subscription_sync import sync_user_subscription
from billing_engine.workers.usage_rollover import run_usage_rollover

usage_cli = AppGroup("usage", help="Usage ledger maintenance.")
billing_cli = AppGroup("billing", help="Subscription maintenance.")


@click.command("init-db")
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("Database initialized.")


@usage_cli.command("rollover")
@click.option("--page-size", type=int, default=None, help="Users per page.")
def rollover(page_size):
    """Create current-window usage records for every user."""
    summary = run_usage_rollover(page_size or current_app.config.get("USAGE_ROLLOVER_PAGE_SIZE", 100))
    click.echo(
        f"Processed {summary['processed']} users, created {summary['created']} records, "
        f"{summary['failed']} failed."
    )


@billing_cli.command("sync-subscription")
@click.argument("user_ref")
def sync_subscription(user_ref):
    """Re-read a user's subscription from Stripe. USER_REF is a user id or email."""
    user = db.session.get(User, user_ref) or User.query.filter_by(email=user_ref).first()
    if user is None:
        raise click.ClickException(f"No user matches {user_ref}")
    try:
        outcome = sync_user_subscription(user.id)
    except NotFoundError as e:
        raise click.ClickException(e.message)
    changed = ", ".join(sorted(outcome.changes)) or "nothing"
    click.echo(f"{user.email}: {outcome.action.value} (changed: {changed})")


def register_cli(app):
    app.cli.add_command(init_db)
    app.cli.add_command(usage_cli)
    app.cli.add_command(billing_cli)
