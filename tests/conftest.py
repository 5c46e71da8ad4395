# =============================================================================
# Billing Core - Pytest Fixtures Configuration
# =============================================================================

import dataclasses
import itertools
from datetime import timedelta

import pytest

from billing import create_app
from billing.extensions import db
from billing.models.plan import Plan, BillingCycle
from billing.models.subject import BillingSubject
from billing.models.subscription import Subscription, SubscriptionStatus, PaymentGateway
from billing.services.events import SubscriptionEvent, signal_for
from billing.services.exceptions import GatewayError
from billing.services.gateways.base import (
    GatewayClient,
    BalanceTransaction,
    RemoteCustomer,
    RemoteInvoice,
    RemoteSchedule,
    RemoteSubscription,
)
from billing.services.subscription_manager import SubscriptionManager
from billing.utils.dates import utcnow


# =============================================================================
# Fake Gateway
# =============================================================================

class FakeGateway(GatewayClient):
    """In-memory gateway recording every call.

    ``fail_on`` maps a method name to the GatewayError it should raise.
    """

    supports_subscription_preview = False

    def __init__(self, period_days=30):
        self.period_days = period_days
        self.calls = []
        self.fail_on = {}
        self.customers = {}
        self.subscriptions = {}
        self.schedules = {}
        self.invoices = {}
        self._ids = itertools.count(1)

    def _next(self, prefix):
        return f'{prefix}_{next(self._ids)}'

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise self.fail_on[name]

    def call_names(self):
        return [call[0] for call in self.calls]

    # Customers ---------------------------------------------------------------

    def create_customer(self, email, metadata=None):
        self._record('create_customer', email)
        customer = RemoteCustomer(id=self._next('cus'), email=email, balance=0)
        self.customers[customer.id] = customer
        return customer

    def _customer(self, customer_ref):
        return self.customers.setdefault(customer_ref, RemoteCustomer(id=customer_ref))

    def retrieve_customer(self, customer_ref):
        self._record('retrieve_customer', customer_ref)
        return self._customer(customer_ref)

    def create_balance_transaction(self, customer_ref, amount, currency):
        self._record('create_balance_transaction', customer_ref, amount, currency)
        customer = self._customer(customer_ref)
        self.customers[customer_ref] = dataclasses.replace(customer, balance=customer.balance + amount)
        return BalanceTransaction(id=self._next('cbtxn'), amount=amount, currency=currency)

    def set_default_payment_method(self, customer_ref, payment_method):
        self._record('set_default_payment_method', customer_ref, payment_method)
        return self._customer(customer_ref)

    def set_balance(self, customer_ref, balance):
        self.customers[customer_ref] = dataclasses.replace(self._customer(customer_ref), balance=balance)

    # Subscriptions -----------------------------------------------------------

    def create_subscription(self, customer_ref, price_ref, quantity=1, trial_end=None, payment_method=None):
        self._record('create_subscription', customer_ref, price_ref, quantity, trial_end)
        now = utcnow().replace(microsecond=0)
        subscription = RemoteSubscription(
            id=self._next('sub'),
            status='trialing' if trial_end else 'active',
            item_ref=self._next('si'),
            price_ref=price_ref,
            quantity=quantity,
            created_at=now,
            current_period_start=now,
            current_period_end=trial_end or now + timedelta(days=self.period_days),
            trial_end=trial_end,
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def add_subscription(self, ref, price_ref, quantity=1, period_start=None, period_end=None, status='active'):
        """Register a remote subscription created outside the fake."""
        now = utcnow().replace(microsecond=0)
        self.subscriptions[ref] = RemoteSubscription(
            id=ref,
            status=status,
            item_ref=f'si_{ref}',
            price_ref=price_ref,
            quantity=quantity,
            created_at=period_start or now,
            current_period_start=period_start or now - timedelta(days=10),
            current_period_end=period_end or now + timedelta(days=20),
        )
        return self.subscriptions[ref]

    def retrieve_subscription(self, subscription_ref):
        self._record('retrieve_subscription', subscription_ref)
        return self.subscriptions[subscription_ref]

    def _replace(self, subscription_ref, **changes):
        current = self.subscriptions[subscription_ref]
        self.subscriptions[subscription_ref] = dataclasses.replace(current, **changes)
        return self.subscriptions[subscription_ref]

    def update_subscription_item(self, subscription_ref, item_ref, price_ref, quantity, proration_behavior=None):
        self._record('update_subscription_item', subscription_ref, item_ref, price_ref, quantity, proration_behavior)
        return self._replace(subscription_ref, price_ref=price_ref, quantity=quantity)

    def cancel_subscription(self, subscription_ref, at_period_end=False):
        self._record('cancel_subscription', subscription_ref, at_period_end)
        if at_period_end:
            return self._replace(subscription_ref, cancel_at_period_end=True)
        return self._replace(subscription_ref, status='canceled', canceled_at=utcnow())

    def resume_subscription(self, subscription_ref):
        self._record('resume_subscription', subscription_ref)
        return self._replace(subscription_ref, cancel_at_period_end=False)

    # Schedules ---------------------------------------------------------------

    def create_schedule(self, subscription_ref):
        self._record('create_schedule', subscription_ref)
        schedule = RemoteSchedule(id=self._next('sub_sched'), status='active', subscription_ref=subscription_ref)
        self.schedules[schedule.id] = schedule
        return schedule

    def update_schedule(self, schedule_ref, phases):
        self._record('update_schedule', schedule_ref, phases)
        schedule = self.schedules[schedule_ref]
        self.schedules[schedule_ref] = RemoteSchedule(
            id=schedule.id, status=schedule.status,
            subscription_ref=schedule.subscription_ref, phases=list(phases),
        )
        return self.schedules[schedule_ref]

    def release_schedule(self, schedule_ref):
        self._record('release_schedule', schedule_ref)
        schedule = self.schedules.pop(schedule_ref)
        return RemoteSchedule(id=schedule.id, status='released', subscription_ref=schedule.subscription_ref)

    # Invoices ----------------------------------------------------------------

    def preview_invoice(self, customer_ref, subscription_ref, item_ref, price_ref, quantity,
                        proration_behavior='always_invoice'):
        self._record('preview_invoice', subscription_ref, price_ref, quantity, proration_behavior)
        return RemoteInvoice(id=None, total=1234)

    def create_invoice(self, customer_ref, subscription_ref):
        self._record('create_invoice', customer_ref, subscription_ref)
        invoice = RemoteInvoice(id=self._next('in'), total=5800, status='open', amount_due=5800)
        self.invoices[invoice.id] = invoice
        return invoice

    def pay_invoice(self, invoice_ref):
        self._record('pay_invoice', invoice_ref)
        return RemoteInvoice(id=invoice_ref, total=5800, status='paid')


class PreviewingFakeGateway(FakeGateway):
    """Fake gateway that can price a new subscription without creating it."""

    supports_subscription_preview = True

    def preview_subscription(self, customer_ref, price_ref, quantity=1, trial_end=None):
        self._record('preview_subscription', customer_ref, price_ref, quantity, trial_end)
        period_end = trial_end or utcnow().replace(microsecond=0) + timedelta(days=self.period_days)
        return RemoteInvoice(id=None, total=2900 * quantity, period_end=period_end)


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture(scope='function')
def app():
    """Create and configure test application with SQLite in-memory database."""
    application = create_app('testing')

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """CLI test runner."""
    return app.test_cli_runner()


# =============================================================================
# Gateway and Manager Fixtures
# =============================================================================

@pytest.fixture
def gateway():
    """In-memory gateway without a preview primitive."""
    return FakeGateway()


@pytest.fixture
def manager(app, gateway):
    """SubscriptionManager wired to the fake gateway."""
    return SubscriptionManager(gateway=gateway)


@pytest.fixture
def previewing_manager(app):
    """SubscriptionManager wired to a fake gateway with subscription previews."""
    return SubscriptionManager(gateway=PreviewingFakeGateway())


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def plans(app):
    """Seeded catalog keyed by slug."""
    catalog = {}
    for tier, cycle, amount in [
        ('starter', BillingCycle.MONTHLY, 900),
        ('starter', BillingCycle.ANNUAL, 9000),
        ('pro', BillingCycle.MONTHLY, 2900),
        ('pro', BillingCycle.ANNUAL, 29000),
    ]:
        slug = Plan.make_slug(tier, cycle)
        plan = Plan(slug=slug, tier=tier, cycle=cycle, gateway_price_ref=f'price_{slug}', amount=amount)
        db.session.add(plan)
        catalog[slug] = plan
    db.session.commit()
    return catalog


@pytest.fixture
def subject(app):
    """Billing subject with a card on file and a gateway customer."""
    billing_subject = BillingSubject(
        email='owner@example.com',
        name='Owner',
        gateway_customer_ref='cus_existing',
        default_payment_method_id='pm_card_visa',
        card_last_four='4242',
    )
    db.session.add(billing_subject)
    db.session.commit()
    return billing_subject


@pytest.fixture
def subject_without_card(app):
    """Billing subject with no payment instrument."""
    billing_subject = BillingSubject(email='nocard@example.com')
    db.session.add(billing_subject)
    db.session.commit()
    return billing_subject


@pytest.fixture
def active_subscription(app, subject, plans, gateway):
    """pro_monthly x1 subscription, mirrored in the fake gateway."""
    gateway.customers['cus_existing'] = RemoteCustomer(id='cus_existing', email=subject.email)
    remote = gateway.add_subscription('sub_live', 'price_pro_monthly', quantity=1)

    subscription = Subscription(
        subject_id=subject.id,
        plan_id=plans['pro_monthly'].id,
        quantity=1,
        payment_gateway=PaymentGateway.STRIPE,
        gateway_subscription_ref=remote.id,
        status=SubscriptionStatus.ACTIVE,
        starts_at=remote.created_at,
    )
    db.session.add(subscription)
    db.session.commit()
    return subscription


@pytest.fixture
def gateway_error():
    """Generic gateway failure."""
    return GatewayError('The gateway is unavailable.', GatewayError.GENERIC)


@pytest.fixture
def events(app):
    """Every domain event emitted during the test, as (event, payload) pairs."""
    received = []
    receivers = []
    for event in SubscriptionEvent:
        def receiver(sender, _event=event, **payload):
            received.append((_event, payload))
        signal_for(event).connect(receiver)
        receivers.append((event, receiver))

    yield received

    for event, receiver in receivers:
        signal_for(event).disconnect(receiver)
