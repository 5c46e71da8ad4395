"""
Stripe implementation of the gateway client.
Translates between Stripe resources and provider-neutral records, and turns
every Stripe (or transport) exception into a GatewayError.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

import stripe

from billing.services.exceptions import GatewayError, GatewayTimeout
from billing.services.gateways.base import (
    GatewayClient,
    BalanceTransaction,
    RemoteCustomer,
    RemoteInvoice,
    RemoteSchedule,
    RemoteSubscription,
    SchedulePhase,
    ALWAYS_INVOICE,
)
from billing.utils.dates import from_timestamp, to_timestamp


def _get(obj, key, default=None):
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _classify(error: Exception, step: str) -> GatewayError:
    """Map a Stripe exception onto the internal error taxonomy."""
    message = _get(error, 'user_message') or str(error) or type(error).__name__
    provider_code = _get(error, 'code')

    if isinstance(error, stripe.CardError):
        json_body = _get(error, 'json_body') or {}
        decline_code = (json_body.get('error') or {}).get('decline_code')
        if GatewayError.INSUFFICIENT_FUNDS in (decline_code, provider_code):
            return GatewayError(message, GatewayError.INSUFFICIENT_FUNDS, step, decline_code or provider_code)
        return GatewayError(message, GatewayError.CARD_DECLINED, step, decline_code or provider_code)

    if isinstance(error, stripe.APIConnectionError):
        if 'timeout' in str(error).lower() or 'timed out' in str(error).lower():
            return GatewayTimeout(message, step, provider_code)
        return GatewayError(message, GatewayError.CONNECTION, step, provider_code)

    if isinstance(error, stripe.RateLimitError):
        return GatewayError(message, GatewayError.RATE_LIMITED, step, provider_code)

    if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
        return GatewayError(message, GatewayError.AUTHENTICATION, step, provider_code)

    if isinstance(error, stripe.InvalidRequestError):
        return GatewayError(message, GatewayError.INVALID_REQUEST, step, provider_code)

    return GatewayError(message, GatewayError.GENERIC, step, provider_code)


@contextmanager
def _translate_errors(step: str):
    """Re-raise anything thrown by the SDK as a GatewayError tagged with the step."""
    try:
        yield
    except GatewayError:
        raise
    except Exception as e:
        raise _classify(e, step) from e


def _first_item(subscription):
    items = _get(subscription, 'items')
    data = _get(items, 'data') or []
    return data[0] if data else None


def _to_subscription(subscription) -> RemoteSubscription:
    item = _first_item(subscription)
    price = _get(item, 'price')

    # Current API keeps period boundaries on the item; older ones on the subscription
    period_start = _get(item, 'current_period_start') or _get(subscription, 'current_period_start')
    period_end = _get(item, 'current_period_end') or _get(subscription, 'current_period_end')

    return RemoteSubscription(
        id=_get(subscription, 'id'),
        status=_get(subscription, 'status'),
        item_ref=_get(item, 'id'),
        price_ref=price if isinstance(price, str) else _get(price, 'id'),
        quantity=_get(item, 'quantity') or 1,
        created_at=from_timestamp(_get(subscription, 'created')),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_end=from_timestamp(_get(subscription, 'trial_end')),
        cancel_at_period_end=bool(_get(subscription, 'cancel_at_period_end')),
        canceled_at=from_timestamp(_get(subscription, 'canceled_at')),
    )


def _to_customer(customer) -> RemoteCustomer:
    return RemoteCustomer(
        id=_get(customer, 'id'),
        email=_get(customer, 'email'),
        balance=_get(customer, 'balance') or 0,
    )


def _to_schedule(schedule) -> RemoteSchedule:
    subscription = _get(schedule, 'subscription')
    return RemoteSchedule(
        id=_get(schedule, 'id'),
        status=_get(schedule, 'status'),
        subscription_ref=subscription if isinstance(subscription, str) else _get(subscription, 'id'),
    )


def _to_invoice(invoice) -> RemoteInvoice:
    lines = _get(_get(invoice, 'lines'), 'data') or []
    line_period_end = _get(_get(lines[0], 'period'), 'end') if lines else None
    return RemoteInvoice(
        id=_get(invoice, 'id'),
        total=_get(invoice, 'total') or 0,
        status=_get(invoice, 'status'),
        amount_due=_get(invoice, 'amount_due') or 0,
        period_end=from_timestamp(line_period_end or _get(invoice, 'period_end')),
    )


def _phase_params(phase: SchedulePhase) -> dict:
    params = {
        'items': [{'price': phase.price_ref, 'quantity': phase.quantity}],
    }
    if phase.proration_behavior:
        params['proration_behavior'] = phase.proration_behavior
    if phase.start_date is not None:
        params['start_date'] = to_timestamp(phase.start_date)
    if phase.end_date is not None:
        params['end_date'] = to_timestamp(phase.end_date)
    if phase.iterations is not None:
        params['duration'] = {'interval': phase.interval, 'interval_count': phase.iterations}
    if phase.trial_end is not None:
        params['trial_end'] = to_timestamp(phase.trial_end)
    return params


class StripeGatewayClient(GatewayClient):
    """Gateway client backed by the stripe SDK (module-level api key)."""

    supports_subscription_preview = True

    # -------------------------------------------------------------------------
    # Customers and balance
    # -------------------------------------------------------------------------

    def create_customer(self, email: str, metadata: Optional[dict] = None) -> RemoteCustomer:
        with _translate_errors('create_customer'):
            customer = stripe.Customer.create(email=email, metadata=metadata or {})
        return _to_customer(customer)

    def retrieve_customer(self, customer_ref: str) -> RemoteCustomer:
        with _translate_errors('retrieve_customer'):
            customer = stripe.Customer.retrieve(customer_ref)
        return _to_customer(customer)

    def create_balance_transaction(self, customer_ref: str, amount: int, currency: str) -> BalanceTransaction:
        with _translate_errors('create_balance_transaction'):
            transaction = stripe.Customer.create_balance_transaction(
                customer_ref,
                amount=amount,
                currency=currency,
            )
        return BalanceTransaction(
            id=_get(transaction, 'id'),
            amount=_get(transaction, 'amount', amount),
            currency=_get(transaction, 'currency', currency),
            applied_at=from_timestamp(_get(transaction, 'created')),
        )

    def set_default_payment_method(self, customer_ref: str, payment_method: str) -> RemoteCustomer:
        with _translate_errors('set_default_payment_method'):
            customer = stripe.Customer.modify(
                customer_ref,
                invoice_settings={'default_payment_method': payment_method},
            )
        return _to_customer(customer)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        quantity: int = 1,
        trial_end: Optional[datetime] = None,
        payment_method: Optional[str] = None,
    ) -> RemoteSubscription:
        params = {
            'customer': customer_ref,
            'items': [{'price': price_ref, 'quantity': quantity}],
        }
        if trial_end is not None:
            params['trial_end'] = to_timestamp(trial_end)

        if payment_method:
            with _translate_errors('attach_payment_method'):
                stripe.PaymentMethod.attach(payment_method, customer=customer_ref)
            params['default_payment_method'] = payment_method

        with _translate_errors('create_subscription'):
            subscription = stripe.Subscription.create(**params)
        return _to_subscription(subscription)

    def retrieve_subscription(self, subscription_ref: str) -> RemoteSubscription:
        with _translate_errors('retrieve_subscription'):
            subscription = stripe.Subscription.retrieve(subscription_ref)
        return _to_subscription(subscription)

    def update_subscription_item(
        self,
        subscription_ref: str,
        item_ref: str,
        price_ref: str,
        quantity: int,
        proration_behavior: Optional[str] = None,
    ) -> RemoteSubscription:
        params = {
            'items': [{'id': item_ref, 'price': price_ref, 'quantity': quantity}],
        }
        if proration_behavior:
            params['proration_behavior'] = proration_behavior

        with _translate_errors('update_subscription_item'):
            subscription = stripe.Subscription.modify(subscription_ref, **params)
        return _to_subscription(subscription)

    def cancel_subscription(self, subscription_ref: str, at_period_end: bool = False) -> RemoteSubscription:
        with _translate_errors('cancel_subscription'):
            if at_period_end:
                subscription = stripe.Subscription.modify(subscription_ref, cancel_at_period_end=True)
            else:
                subscription = stripe.Subscription.cancel(subscription_ref)
        return _to_subscription(subscription)

    def resume_subscription(self, subscription_ref: str) -> RemoteSubscription:
        with _translate_errors('resume_subscription'):
            subscription = stripe.Subscription.modify(subscription_ref, cancel_at_period_end=False)
        return _to_subscription(subscription)

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    def create_schedule(self, subscription_ref: str) -> RemoteSchedule:
        with _translate_errors('create_schedule'):
            schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription_ref)
        return _to_schedule(schedule)

    def update_schedule(self, schedule_ref: str, phases: List[SchedulePhase]) -> RemoteSchedule:
        with _translate_errors('update_schedule'):
            schedule = stripe.SubscriptionSchedule.modify(
                schedule_ref,
                phases=[_phase_params(phase) for phase in phases],
            )
        return _to_schedule(schedule)

    def release_schedule(self, schedule_ref: str) -> RemoteSchedule:
        with _translate_errors('release_schedule'):
            schedule = stripe.SubscriptionSchedule.release(schedule_ref)
        return _to_schedule(schedule)

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def preview_invoice(
        self,
        customer_ref: str,
        subscription_ref: str,
        item_ref: str,
        price_ref: str,
        quantity: int,
        proration_behavior: str = ALWAYS_INVOICE,
    ) -> RemoteInvoice:
        with _translate_errors('preview_invoice'):
            invoice = stripe.Invoice.create_preview(
                customer=customer_ref,
                subscription=subscription_ref,
                subscription_details={
                    'items': [{'id': item_ref, 'price': price_ref, 'quantity': quantity}],
                    'proration_behavior': proration_behavior,
                },
            )
        return _to_invoice(invoice)

    def preview_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        quantity: int = 1,
        trial_end: Optional[datetime] = None,
    ) -> RemoteInvoice:
        details = {'items': [{'price': price_ref, 'quantity': quantity}]}
        if trial_end is not None:
            details['trial_end'] = to_timestamp(trial_end)

        with _translate_errors('preview_subscription'):
            invoice = stripe.Invoice.create_preview(
                customer=customer_ref,
                subscription_details=details,
            )
        return _to_invoice(invoice)

    def create_invoice(self, customer_ref: str, subscription_ref: str) -> RemoteInvoice:
        with _translate_errors('create_invoice'):
            invoice = stripe.Invoice.create(
                customer=customer_ref,
                subscription=subscription_ref,
                auto_advance=True,
            )
        return _to_invoice(invoice)

    def pay_invoice(self, invoice_ref: str) -> RemoteInvoice:
        with _translate_errors('pay_invoice'):
            invoice = stripe.Invoice.pay(invoice_ref)
        return _to_invoice(invoice)
