"""
Subscription lifecycle manager.

Orchestrates every change to a subject's subscription: validates the intent,
calls the payment gateway, mirrors the result into the local records and emits
a domain event. Immediate changes (start, upgrade, cancel, resume, swap) take
effect at once; downgrades and scheduled starts are deferred to a billing
boundary owned by the gateway.

The subject is passed explicitly into every call. Direct method calls raise
BillingError subclasses; ``dispatch`` turns them into IntentResult values.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from flask import current_app

from billing.extensions import db
from billing.models.plan import BillingCycle
from billing.models.schedule import SubscriptionSchedule
from billing.models.subject import BillingSubject
from billing.models.subscription import PaymentGateway, Subscription, SubscriptionStatus
from billing.services.balance_ledger import BalanceLedger
from billing.services.catalog import PlanCatalog
from billing.services.events import SubscriptionEvent, emit
from billing.services.exceptions import (
    BillingError,
    GatewayError,
    InvoicePaymentFailed,
    NoActiveSubscription,
    NoScheduledChange,
    PaymentMethodMissing,
    ResumeFailed,
    ScheduleConflict,
    SwapFailed,
)
from billing.services.gateways import GatewayClients
from billing.services.gateways.base import (
    ALWAYS_INVOICE,
    NO_PRORATION,
    PRORATE,
    GatewayClient,
    RemoteSubscription,
    SchedulePhase,
)
from billing.services.proration import ProrationCalculator
from billing.services.schedule_store import ScheduleStore
from billing.utils.dates import (
    add_months,
    format_human,
    format_ymdhis,
    format_zulu,
    to_naive_utc,
    utcnow,
)


# =============================================================================
# Intent options
# =============================================================================

def _check_quantity(quantity):
    if not isinstance(quantity, int) or quantity < 1:
        raise ValueError('quantity must be an integer >= 1')


def _normalize_moment(options, name):
    """Store an aware datetime option as naive UTC, like every local record."""
    object.__setattr__(options, name, to_naive_utc(getattr(options, name)))


@dataclass(frozen=True)
class StartOptions:
    plan_id: int
    quantity: int = 1
    payment_method: Optional[str] = None
    trial_until: Optional[datetime] = None
    credit_amount: int = 0

    def __post_init__(self):
        _check_quantity(self.quantity)
        _normalize_moment(self, 'trial_until')
        if self.credit_amount < 0:
            raise ValueError('credit_amount cannot be negative')


@dataclass(frozen=True)
class ScheduledStartOptions:
    plan_id: int
    quantity: int = 1
    trial_until: Optional[datetime] = None

    def __post_init__(self):
        _check_quantity(self.quantity)
        _normalize_moment(self, 'trial_until')


@dataclass(frozen=True)
class UpgradeOptions:
    plan_id: int
    quantity: int = 1
    prorate_now: bool = True
    invoice_now: bool = False

    def __post_init__(self):
        _check_quantity(self.quantity)


@dataclass(frozen=True)
class DowngradeOptions:
    plan_id: int
    quantity: int = 1
    # Proration behaviour of the schedule phases
    prorate_now: bool = False

    def __post_init__(self):
        _check_quantity(self.quantity)


@dataclass(frozen=True)
class SwapOptions:
    plan_id: int
    quantity: int = 1
    payment_method: Optional[str] = None

    def __post_init__(self):
        _check_quantity(self.quantity)


@dataclass(frozen=True)
class CancelOptions:
    now: bool = False
    next_plan_id: Optional[int] = None
    swapped: bool = False


@dataclass(frozen=True)
class NextBillingTimeOptions:
    future_time: Optional[datetime] = None

    def __post_init__(self):
        _normalize_moment(self, 'future_time')


@dataclass(frozen=True)
class ProrationOptions:
    requested_quantity: int
    tier: str
    cycle: str

    def __post_init__(self):
        _check_quantity(self.requested_quantity)
        if not self.tier:
            raise ValueError('tier is required')


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class NextBillingTime:
    raw: datetime
    zulu: str
    human: str
    ymdhis: str
    will_be_billed_on: str

    @classmethod
    def from_datetime(cls, moment: datetime) -> 'NextBillingTime':
        human = format_human(moment)
        return cls(
            raw=moment,
            zulu=format_zulu(moment),
            human=human,
            ymdhis=format_ymdhis(moment),
            will_be_billed_on=f'will be billed on {human}',
        )


@dataclass(frozen=True)
class SwapResult:
    """Outcome of a swap. The caller records the new subscription locally."""
    remote_subscription: RemoteSubscription
    paid_through: Optional[datetime]
    plan_id: int
    quantity: int


class Intent(str, enum.Enum):
    START = 'start'
    SCHEDULED_START = 'scheduled_start'
    UPGRADE = 'upgrade'
    DOWNGRADE = 'downgrade'
    SWAP = 'swap'
    CANCEL = 'cancel'
    CANCEL_SCHEDULE = 'cancel_schedule'
    PAUSE = 'pause'
    RESUME = 'resume'
    NEXT_BILLING_TIME = 'next_billing_time'
    PRORATION = 'proration'


@dataclass
class IntentResult:
    ok: bool
    data: Any = None
    messages: List[str] = field(default_factory=list)
    code: Optional[str] = None

    def to_dict(self):
        return {
            'status': self.ok,
            'code': self.code,
            'messages': self.messages,
        }


# =============================================================================
# Manager
# =============================================================================

class SubscriptionManager:
    """Root orchestrator of the subscription lifecycle."""

    def __init__(
        self,
        gateway: Optional[GatewayClient] = None,
        catalog: Optional[PlanCatalog] = None,
        schedules: Optional[ScheduleStore] = None,
        ledger: Optional[BalanceLedger] = None,
    ):
        self.payment_gateway = PaymentGateway(current_app.config['DEFAULT_PAYMENT_GATEWAY'])
        # New subscriptions go to the default gateway; existing ones to their own
        self.clients = GatewayClients(self.payment_gateway, gateway)
        self.gateway = self.clients.default
        self.catalog = catalog or PlanCatalog()
        self.schedules = schedules or ScheduleStore(self.gateway, self.clients)
        self.ledger = ledger or BalanceLedger(self.gateway)

    def gateway_for(self, subscription: Subscription) -> GatewayClient:
        """Client of the gateway the subscription lives on."""
        return self.clients.for_tag(subscription.payment_gateway)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, subject: BillingSubject, intent, options=None) -> IntentResult:
        """Run one intent and report its outcome instead of raising BillingError."""
        intent = Intent(intent)
        handlers = {
            Intent.START: lambda: self.start(subject, options),
            Intent.SCHEDULED_START: lambda: self.scheduled_start(subject, options),
            Intent.UPGRADE: lambda: self.upgrade(subject, options),
            Intent.DOWNGRADE: lambda: self.downgrade(subject, options),
            Intent.SWAP: lambda: self.swap(subject, options),
            Intent.CANCEL: lambda: self.cancel(subject, options or CancelOptions()),
            Intent.CANCEL_SCHEDULE: lambda: self.cancel_schedule(subject),
            Intent.PAUSE: lambda: self.pause(subject),
            Intent.RESUME: lambda: self.resume(subject),
            Intent.NEXT_BILLING_TIME: lambda: self.get_next_billing_time(
                subject, getattr(options, 'future_time', None)
            ),
            Intent.PRORATION: lambda: self.get_proration(subject, options),
        }

        try:
            data = handlers[intent]()
        except BillingError as e:
            return IntentResult(ok=False, messages=e.messages, code=e.code)
        return IntentResult(ok=True, data=data)

    # -------------------------------------------------------------------------
    # Immediate changes
    # -------------------------------------------------------------------------

    def start(self, subject: BillingSubject, options: StartOptions) -> Subscription:
        """Create the remote subscription, then record it locally.

        Raises:
            PaymentMethodMissing: No instrument on file and none supplied
            PlanNotFound: Unknown plan
            GatewayError: Remote call failed (no local record written)
        """
        self._require_payment_method(subject, options.payment_method)
        plan = self.catalog.get(options.plan_id)

        # Credit has to exist before the first invoice is drawn up
        if options.credit_amount > 0:
            self.ledger.apply_credit(subject, options.credit_amount)
        customer_ref = self.ledger.ensure_customer(subject)

        now = utcnow()
        trial_end = options.trial_until if options.trial_until and options.trial_until > now else None

        remote = self.gateway.create_subscription(
            customer_ref,
            plan.gateway_price_ref,
            quantity=options.quantity,
            trial_end=trial_end,
            payment_method=options.payment_method,
        )

        subject.clear_balance()
        subscription = Subscription(
            subject_id=subject.id,
            plan_id=plan.id,
            quantity=options.quantity,
            payment_gateway=self.payment_gateway,
            gateway_subscription_ref=remote.id,
            status=SubscriptionStatus.TRIALING if trial_end else SubscriptionStatus.ACTIVE,
            starts_at=options.trial_until or remote.created_at or now,
            trial_ends_at=trial_end,
        )
        db.session.add(subscription)
        db.session.commit()

        if options.payment_method:
            self.gateway.set_default_payment_method(customer_ref, options.payment_method)
            subject.default_payment_method_id = options.payment_method
            db.session.commit()

        current_app.logger.info(
            f'Subscription {subscription.id} started for subject {subject.id} on plan {plan.slug}'
        )
        emit(SubscriptionEvent.STARTED, subject, subscription=subscription)
        return subscription

    def upgrade(self, subject: BillingSubject, options: UpgradeOptions) -> Subscription:
        """Change plan/quantity now. Supersedes any pending schedule.

        Raises:
            NoActiveSubscription: Nothing to upgrade
            GatewayError: Remote call failed; ``step`` names the failing call
            InvoicePaymentFailed: Plan changed but the immediate invoice was not paid
        """
        subscription = self._live_subscription(subject)
        plan = self.catalog.get(options.plan_id)

        schedule = self.schedules.find_for(subscription)
        if schedule is not None:
            try:
                self.schedules.release(schedule)
            except GatewayError as e:
                raise e.at_step('release_schedule')
            proration = None
        else:
            proration = PRORATE if options.prorate_now else NO_PRORATION

        gateway = self.gateway_for(subscription)
        remote = gateway.retrieve_subscription(subscription.gateway_subscription_ref)
        gateway.update_subscription_item(
            subscription.gateway_subscription_ref,
            remote.item_ref,
            plan.gateway_price_ref,
            options.quantity,
            proration_behavior=proration,
        )

        subscription.plan_id = plan.id
        subscription.quantity = options.quantity
        db.session.commit()

        if options.invoice_now:
            self._invoice_now(subject, subscription)

        self.ledger.resync(subject)

        current_app.logger.info(
            f'Subscription {subscription.id} of subject {subject.id} upgraded to '
            f'{plan.slug} x{options.quantity}'
        )
        emit(SubscriptionEvent.UPDATED, subject, subscription=subscription)
        return subscription

    def swap(self, subject: BillingSubject, options: SwapOptions) -> SwapResult:
        """Cancel the current subscription and start the new plan on the paid-through remainder.

        The old local record is deleted; the caller records the new subscription
        from the returned SwapResult.

        Raises:
            PaymentMethodMissing: No instrument on file and none supplied
            SwapFailed: The old subscription is gone but the new one could not be created
        """
        self._require_payment_method(subject, options.payment_method)
        subscription = self._live_subscription(subject)
        plan = self.catalog.get(options.plan_id)

        schedule = self.schedules.find_for(subscription)
        if schedule is not None:
            self._release_or_conflict(schedule)

        gateway = self.gateway_for(subscription)
        remote = gateway.retrieve_subscription(subscription.gateway_subscription_ref)
        paid_through = remote.billing_boundary

        gateway.cancel_subscription(subscription.gateway_subscription_ref)
        now = utcnow()
        subscription.status = SubscriptionStatus.CANCELED
        subscription.ends_at = paid_through or now
        subscription.gateway_subscription_ref = None
        subscription.next_plan_id = plan.id
        subscription.swapped = True
        db.session.commit()

        customer_ref = self.ledger.ensure_customer(subject)
        trial_end = paid_through if paid_through and paid_through > now else None
        try:
            new_remote = self.gateway.create_subscription(
                customer_ref,
                plan.gateway_price_ref,
                quantity=options.quantity,
                trial_end=trial_end,
                payment_method=options.payment_method,
            )
        except GatewayError as e:
            current_app.logger.error(
                f'Swap failed for subject {subject.id} after cancelling subscription {subscription.id}',
                exc_info=True,
            )
            raise SwapFailed(e) from e

        db.session.delete(subscription)
        if options.payment_method:
            subject.default_payment_method_id = options.payment_method
        db.session.commit()

        result = SwapResult(
            remote_subscription=new_remote,
            paid_through=paid_through,
            plan_id=plan.id,
            quantity=options.quantity,
        )
        current_app.logger.info(f'Subject {subject.id} swapped to {plan.slug} ({new_remote.id})')
        emit(SubscriptionEvent.SWAPPED, subject, result=result)
        return result

    def cancel(self, subject: BillingSubject, options: CancelOptions = CancelOptions()) -> datetime:
        """Cancel now or at the end of the current period.

        Returns:
            The effective end of the subscription
        """
        subscription = self._live_subscription(subject)

        schedule = self.schedules.find_for(subscription)
        if schedule is not None:
            self._release_or_conflict(schedule)

        gateway = self.gateway_for(subscription)
        if options.now:
            gateway.cancel_subscription(subscription.gateway_subscription_ref)
            subscription.status = SubscriptionStatus.CANCELED
            subscription.ends_at = utcnow()
            subscription.gateway_subscription_ref = None
        else:
            remote = gateway.cancel_subscription(
                subscription.gateway_subscription_ref, at_period_end=True,
            )
            subscription.status = SubscriptionStatus.GRACE_PERIOD
            subscription.ends_at = remote.billing_boundary or subscription.trial_ends_at or utcnow()

        if options.next_plan_id is not None:
            subscription.next_plan_id = options.next_plan_id
        if options.swapped:
            subscription.swapped = True
        db.session.commit()

        current_app.logger.info(
            f'Subscription {subscription.id} of subject {subject.id} cancelled '
            f'({"now" if options.now else "at period end"}), ends at {subscription.ends_at}'
        )
        emit(SubscriptionEvent.CANCELLED, subject, subscription=subscription, ends_at=subscription.ends_at)
        return subscription.ends_at

    def pause(self, subject: BillingSubject) -> None:
        """Placeholder: announces the pause, changes nothing."""
        subscription = self._current_subscription(subject)
        current_app.logger.info(f'Pause requested for subject {subject.id}')
        emit(SubscriptionEvent.PAUSED, subject, subscription=subscription)

    def resume(self, subject: BillingSubject) -> Optional[Subscription]:
        """Undo a cancel-at-period-end while the grace period lasts.

        Outside a grace period this is a no-op: the event is still emitted with
        ``subscription=None`` and None is returned.

        Raises:
            ResumeFailed: Gateway refused; the local record is left as it was
        """
        subscription = self._current_subscription(subject)
        if subscription is None or not subscription.on_grace_period:
            current_app.logger.info(f'Nothing to resume for subject {subject.id}')
            emit(SubscriptionEvent.RESUMED, subject, subscription=None)
            return None

        try:
            self.gateway_for(subscription).resume_subscription(subscription.gateway_subscription_ref)
        except GatewayError as e:
            current_app.logger.error(
                f'Resume failed for subscription {subscription.id}: {e.message}',
                exc_info=True,
            )
            raise ResumeFailed(e) from e

        subscription.status = (
            SubscriptionStatus.TRIALING if subscription.on_trial else SubscriptionStatus.ACTIVE
        )
        subscription.ends_at = None
        subscription.next_plan_id = None
        db.session.commit()

        current_app.logger.info(f'Subscription {subscription.id} of subject {subject.id} resumed')
        emit(SubscriptionEvent.RESUMED, subject, subscription=subscription)
        return subscription

    # -------------------------------------------------------------------------
    # Deferred changes
    # -------------------------------------------------------------------------

    def downgrade(self, subject: BillingSubject, options: DowngradeOptions) -> SubscriptionSchedule:
        """Schedule the new plan for the current billing boundary.

        The subscription record itself is not modified.

        Raises:
            ScheduleConflict: A previous schedule could not be released
            GatewayError: Remote call failed; ``step`` names the failing call
        """
        subscription = self._live_subscription(subject)
        plan = self.catalog.get(options.plan_id)

        existing = self.schedules.find_for(subscription)
        if existing is not None:
            self._release_or_conflict(existing)

        gateway = self.gateway_for(subscription)
        remote = gateway.retrieve_subscription(subscription.gateway_subscription_ref)
        boundary = remote.billing_boundary
        if boundary is None:
            raise GatewayError(
                'The gateway did not report a billing period for this subscription.',
                step='retrieve_subscription',
            )

        remote_schedule = gateway.create_schedule(subscription.gateway_subscription_ref)
        schedule = self.schedules.create(
            subscription,
            plan,
            options.quantity,
            boundary,
            gateway_schedule_ref=remote_schedule.id,
        )

        proration = PRORATE if options.prorate_now else NO_PRORATION
        trial_end = remote.trial_end if remote.trial_end and remote.trial_end > utcnow() else None
        phases = [
            SchedulePhase(
                price_ref=subscription.plan.gateway_price_ref,
                quantity=subscription.quantity,
                proration_behavior=proration,
                start_date=remote.current_period_start,
                end_date=boundary,
                trial_end=trial_end,
            ),
            SchedulePhase(
                price_ref=plan.gateway_price_ref,
                quantity=options.quantity,
                proration_behavior=proration,
                iterations=1,
                interval=plan.cycle.interval,
            ),
        ]
        try:
            gateway.update_schedule(remote_schedule.id, phases)
        except GatewayError as e:
            raise e.at_step('update_schedule')

        current_app.logger.info(
            f'Subscription {subscription.id} of subject {subject.id} scheduled to '
            f'{plan.slug} x{options.quantity} at {boundary}'
        )
        return schedule

    def scheduled_start(self, subject: BillingSubject, options: ScheduledStartOptions) -> SubscriptionSchedule:
        """Record a new plan that begins once the current subscription's period ends.

        Prices the new subscription with a gateway preview when available;
        otherwise a pending remote subscription is created and its reference
        kept on the schedule so it can be cancelled later.
        """
        subscription = self._live_subscription(subject)
        plan = self.catalog.get(options.plan_id)

        existing = self.schedules.find_for(subscription)
        if existing is not None:
            self._release_or_conflict(existing)

        customer_ref = self.ledger.ensure_customer(subject)
        now = utcnow()
        trial_end = options.trial_until if options.trial_until and options.trial_until > now else None

        if self.gateway.supports_subscription_preview:
            preview = self.gateway.preview_subscription(
                customer_ref, plan.gateway_price_ref, options.quantity, trial_end,
            )
            starts_at = preview.period_end
            data = {'preview_total': preview.total}
        else:
            pending = self.gateway.create_subscription(
                customer_ref, plan.gateway_price_ref, quantity=options.quantity, trial_end=trial_end,
            )
            starts_at = pending.billing_boundary
            data = {'pending_subscription_ref': pending.id}

        if starts_at is None:
            remote = self.gateway_for(subscription).retrieve_subscription(subscription.gateway_subscription_ref)
            starts_at = remote.billing_boundary or now

        schedule = self.schedules.create(subscription, plan, options.quantity, starts_at, data=data)

        current_app.logger.info(
            f'Scheduled start of {plan.slug} for subject {subject.id} at {starts_at}'
        )
        return schedule

    def cancel_schedule(self, subject: BillingSubject) -> None:
        """Release the pending schedule of the current subscription.

        Raises:
            NoScheduledChange: Nothing is scheduled
        """
        subscription = self._current_subscription(subject)
        schedule = self.schedules.find_for(subscription) if subscription else None
        if schedule is None:
            raise NoScheduledChange()

        self.schedules.release(schedule)
        current_app.logger.info(f'Scheduled change cancelled for subject {subject.id}')

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_next_billing_time(
        self, subject: BillingSubject, future_time: Optional[datetime] = None,
    ) -> Optional[NextBillingTime]:
        """When the subject will next be billed.

        Priority: explicit ``future_time``, then the trial end, then the
        gateway's current period end. None without a subscription that is
        still alive; a grace period that has run out counts as ended.
        """
        subscription = self._current_subscription(subject)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            return None

        if future_time is not None:
            moment = to_naive_utc(future_time)
        elif subscription.on_trial:
            moment = subscription.trial_ends_at
        else:
            remote = self.gateway_for(subscription).retrieve_subscription(subscription.gateway_subscription_ref)
            moment = remote.current_period_end

        if moment is None:
            return None
        return NextBillingTime.from_datetime(moment)

    def get_proration(self, subject: BillingSubject, options: ProrationOptions) -> int:
        """Amount the change would cost now (negative = credit). Never raises."""
        try:
            subscription = self._live_subscription(subject)
            plan = self.catalog.by_tier_cycle(options.tier, options.cycle)
            gateway = self.gateway_for(subscription)
            remote = gateway.retrieve_subscription(subscription.gateway_subscription_ref)
            invoice = gateway.preview_invoice(
                subject.gateway_customer_ref,
                subscription.gateway_subscription_ref,
                remote.item_ref,
                plan.gateway_price_ref,
                options.requested_quantity,
                proration_behavior=ALWAYS_INVOICE,
            )
            return invoice.total
        except Exception as e:
            current_app.logger.warning(
                f'Proration preview failed for subject {subject.id}, using local estimate: {e}'
            )
            return self._estimate_proration(subject, options)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _estimate_proration(self, subject: BillingSubject, options: ProrationOptions) -> int:
        try:
            subscription = self._current_subscription(subject)
            now = utcnow()
            kwargs = {'price_table': self.catalog.price_table(), 'now': now}

            if subscription is not None and subscription.is_live:
                current = subscription.plan
                kwargs.update(
                    current_amount=current.amount,
                    current_cycle=current.cycle,
                    current_quantity=subscription.quantity,
                )
                kwargs['period_start'], kwargs['period_end'] = self._local_period(
                    subscription.starts_at, current.cycle, now,
                )

            return ProrationCalculator(**kwargs).calculate(
                options.requested_quantity, options.tier, options.cycle,
            )
        except Exception:
            current_app.logger.exception(f'Local proration estimate failed for subject {subject.id}')
            return 0

    @staticmethod
    def _local_period(anchor: Optional[datetime], cycle: BillingCycle, now: datetime):
        """Billing period containing ``now``, counted in whole cycles from ``anchor``."""
        if anchor is None or anchor > now:
            return None, None

        step = cycle.months
        count = ((now.year - anchor.year) * 12 + now.month - anchor.month) // step
        start = add_months(anchor, count * step)
        if start > now:
            count -= 1
            start = add_months(anchor, count * step)
        return start, add_months(anchor, (count + 1) * step)

    @staticmethod
    def _require_payment_method(subject: BillingSubject, payment_method: Optional[str]) -> None:
        if not payment_method and not subject.has_payment_method:
            raise PaymentMethodMissing()

    @staticmethod
    def _current_subscription(subject: BillingSubject) -> Optional[Subscription]:
        """Most recent subscription, with an expired grace period settled to canceled."""
        subscription = Subscription.current_for(subject.id)
        if subscription is not None and subscription.settle():
            db.session.commit()
            current_app.logger.info(
                f'Subscription {subscription.id} of subject {subject.id} ended after its grace period'
            )
        return subscription

    def _live_subscription(self, subject: BillingSubject) -> Subscription:
        subscription = self._current_subscription(subject)
        if subscription is None or not subscription.is_live:
            raise NoActiveSubscription()
        return subscription

    def _invoice_now(self, subject: BillingSubject, subscription: Subscription) -> None:
        gateway = self.gateway_for(subscription)
        invoice = gateway.create_invoice(
            subject.gateway_customer_ref, subscription.gateway_subscription_ref,
        )
        try:
            gateway.pay_invoice(invoice.id)
        except GatewayError as e:
            current_app.logger.error(
                f'Invoice {invoice.id} for subscription {subscription.id} could not be paid',
                exc_info=True,
            )
            raise InvoicePaymentFailed(e.at_step('pay_invoice'), invoice.id) from e

    def _release_or_conflict(self, schedule: SubscriptionSchedule) -> None:
        try:
            self.schedules.release(schedule)
        except GatewayError as e:
            raise ScheduleConflict(gateway_error=e) from e
