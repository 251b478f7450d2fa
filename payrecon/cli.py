import click
from flask.cli import with_appcontext
from payrecon.billing import get_billing
from payrecon.billing.errors import BillingError
from payrecon.extensions import db
from payrecon.models.user import User


@click.group()
def admin():
    """Admin identity management."""


@admin.command("create")
@click.option("--email", required=True)
@click.option("--password", required=True)
@with_appcontext
def admin_create(email, password):
    email = email.strip().lower()
    # fail fast if user exists
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")

    user = User(email=email, is_active=True, is_admin=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    click.echo(f"Admin created id={user.id} email={user.email}")


@click.group()
def billing():
    """Billing operations."""


@billing.command("sync")
@click.option("--subscription-id", required=True, help="Stripe subscription id (sub_...)")
@with_appcontext
def billing_sync(subscription_id):
    """Re-fetch a subscription from Stripe and overwrite local status + role."""
    try:
        result = get_billing().checkout.sync_subscription_status(subscription_id)
    except BillingError as e:
        raise click.ClickException(f"{e.code}: {e.message}")
    click.echo(
        f"Synced {subscription_id}: subscriber_id={result['subscriber_id']} "
        f"{result['previous_status']} -> {result['subscription_status']} role_granted={result['role_granted']}"
    )


@billing.command("mode")
@with_appcontext
def billing_mode():
    """Print the active mode and which credentials are configured (never their values)."""
    info = get_billing().settings.describe()
    click.echo(f"mode={info['mode']}")
    for key in ("secret_key", "publishable_key", "test_webhook_secret", "live_webhook_secret"):
        click.echo(f"{key}={'set' if info[key] else 'missing'}")
    click.echo(f"subscriber_role={info['subscriber_role'] or '-'}")


def register_cli(app):
    app.cli.add_command(admin)
    app.cli.add_command(billing)
