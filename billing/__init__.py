"""
Billing core application factory.
Creates and configures the Flask application that hosts the subscription
lifecycle services (database, payment gateway SDK, logging, CLI).
"""
import os
import json
import logging
from datetime import datetime, timezone

import click
import stripe
from flask import Flask

from billing.config import config
from billing.extensions import init_extensions, db


def _init_sentry(app):
    """Initialize Sentry error tracking for production."""
    dsn = app.config.get('SENTRY_DSN') or os.environ.get('SENTRY_DSN')
    if not dsn:
        app.logger.info('SENTRY_DSN not set. error tracking disabled.')
        return

    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(os.environ.get('SENTRY_TRACES_RATE', '0.1')),
        environment=os.environ.get('FLASK_ENV', 'production'),
        send_default_pii=False,
    )
    app.logger.info('Sentry error tracking initialized.')


def configure_stripe(app):
    """Bind the Stripe SDK to the app's credentials and transport limits."""
    if not app.config.get('STRIPE_SECRET_KEY'):
        app.logger.warning('STRIPE_SECRET_KEY not set. gateway calls will fail.')
        return

    stripe.api_key = app.config['STRIPE_SECRET_KEY']
    stripe.max_network_retries = app.config['STRIPE_MAX_NETWORK_RETRIES']
    stripe.default_http_client = stripe.RequestsClient(
        timeout=app.config['STRIPE_API_TIMEOUT'],
    )


def create_app(config_name=None):
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration to use (development, testing, production)

    Returns:
        Configured Flask application instance
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)

    # Load configuration
    config_class = config[config_name]
    app.config.from_object(config_class)

    # Initialize Sentry (production only)
    if config_name == 'production':
        _init_sentry(app)

    # Call init_app if available (production validation happens here)
    if hasattr(config_class, 'init_app'):
        config_class.init_app(app)

    # Initialize extensions
    init_extensions(app)

    # Register models with the SQLAlchemy metadata
    from billing import models  # noqa: F401

    # Payment gateway SDK
    configure_stripe(app)

    # Register CLI commands
    register_cli_commands(app)

    # Configure logging
    configure_logging(app)

    # Create database tables (development only)
    if config_name == 'development':
        with app.app_context():
            db.create_all()

    return app


def register_cli_commands(app):
    """Register operator CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all billing tables."""
        db.create_all()
        click.echo('Billing tables created.')

    @app.cli.command('seed-plans')
    def seed_plans():
        """Insert the configured plan catalog (idempotent)."""
        from billing.services.catalog import PlanCatalog

        created = PlanCatalog().seed(app.config['BILLING_PLANS'])
        click.echo(f'{created} plan(s) created.')

    @app.cli.command('next-billing-time')
    @click.argument('subject_id', type=int)
    def next_billing_time(subject_id):
        """Show the next billing time of a subject."""
        from billing.models.subject import BillingSubject
        from billing.services.subscription_manager import SubscriptionManager

        subject = db.session.get(BillingSubject, subject_id)
        if subject is None:
            raise click.ClickException(f'Unknown billing subject {subject_id}')

        result = SubscriptionManager().get_next_billing_time(subject)
        if result is None:
            click.echo('No subscription.')
        else:
            click.echo(f"{result.zulu} ({result.will_be_billed_on})")

    @app.cli.command('pull-balance')
    @click.argument('subject_id', type=int)
    def pull_balance(subject_id):
        """Pull a negative gateway balance into the local balance mirror."""
        from billing.models.subject import BillingSubject
        from billing.services.balance_ledger import BalanceLedger
        from billing.services.gateways import get_gateway_client

        subject = db.session.get(BillingSubject, subject_id)
        if subject is None:
            raise click.ClickException(f'Unknown billing subject {subject_id}')

        ledger = BalanceLedger(get_gateway_client(app.config['DEFAULT_PAYMENT_GATEWAY']))
        remote = ledger.pull_remote_balance(subject)
        click.echo(f'Remote balance: {remote} / local balance: {subject.balance}')

    @app.cli.command('cancel-schedule')
    @click.argument('subject_id', type=int)
    def cancel_schedule(subject_id):
        """Release the pending plan change of a subject."""
        from billing.models.subject import BillingSubject
        from billing.services.exceptions import BillingError
        from billing.services.subscription_manager import SubscriptionManager

        subject = db.session.get(BillingSubject, subject_id)
        if subject is None:
            raise click.ClickException(f'Unknown billing subject {subject_id}')

        try:
            SubscriptionManager().cancel_schedule(subject)
        except BillingError as e:
            raise click.ClickException(e.message)
        click.echo('Pending schedule released.')


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production (cloud log aggregation)."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        # Add exception info
        if record.exc_info and record.exc_info[0]:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(app):
    """Configure application logging.

    Production: JSON to stdout (for cloud log aggregation).
    Development: plain text.
    """
    if app.testing:
        return

    if not app.debug:
        # Production: JSON to stdout
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(JSONFormatter())
        stream_handler.setLevel(logging.INFO)

        # Clear existing handlers to avoid duplicates
        app.logger.handlers.clear()
        app.logger.addHandler(stream_handler)
        app.logger.setLevel(logging.INFO)
        app.logger.info('Billing core startup (JSON logging)')
    else:
        # Development: plain text
        app.logger.setLevel(logging.DEBUG)
        app.logger.info('Billing core startup (development)')
