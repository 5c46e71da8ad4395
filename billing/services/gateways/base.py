"""
Gateway client interface.

The only seam between the lifecycle core and a payment provider. Each method
maps to one remote call and returns provider-neutral records; every failure is
raised as GatewayError (or GatewayTimeout), never as a provider exception.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


# Proration behaviours understood by every gateway
PRORATE = 'create_prorations'
NO_PRORATION = 'none'
ALWAYS_INVOICE = 'always_invoice'


@dataclass(frozen=True)
class RemoteCustomer:
    id: str
    email: Optional[str] = None
    balance: int = 0


@dataclass(frozen=True)
class RemoteSubscription:
    id: str
    status: str
    item_ref: Optional[str] = None
    price_ref: Optional[str] = None
    quantity: int = 1
    created_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    @property
    def billing_boundary(self) -> Optional[datetime]:
        """End of what has been paid for: trial end while trialing, else period end."""
        if self.trial_end is not None and self.status == 'trialing':
            return self.trial_end
        return self.current_period_end


@dataclass(frozen=True)
class SchedulePhase:
    """One time-ordered phase of a remote schedule."""
    price_ref: str
    quantity: int
    proration_behavior: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    # Number of billing intervals the phase lasts (open-ended when None)
    iterations: Optional[int] = None
    interval: str = 'month'
    # Keeps a running trial alive through the phase
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class RemoteSchedule:
    id: str
    status: str
    subscription_ref: Optional[str] = None
    phases: List[SchedulePhase] = field(default_factory=list)


@dataclass(frozen=True)
class RemoteInvoice:
    id: Optional[str]
    total: int
    status: Optional[str] = None
    amount_due: int = 0
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceTransaction:
    id: str
    amount: int
    currency: str
    applied_at: Optional[datetime] = None


class GatewayClient(ABC):
    """Capability interface of a payment gateway."""

    #: Gateway can price a new subscription without creating it
    supports_subscription_preview = False

    # -------------------------------------------------------------------------
    # Customers and balance
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_customer(self, email: str, metadata: Optional[dict] = None) -> RemoteCustomer:
        """Create a remote customer record."""

    @abstractmethod
    def retrieve_customer(self, customer_ref: str) -> RemoteCustomer:
        """Fetch a remote customer, including its balance."""

    @abstractmethod
    def create_balance_transaction(self, customer_ref: str, amount: int, currency: str) -> BalanceTransaction:
        """Apply a signed adjustment to the customer balance (negative = credit)."""

    @abstractmethod
    def set_default_payment_method(self, customer_ref: str, payment_method: str) -> RemoteCustomer:
        """Make a payment instrument the customer's default."""

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        quantity: int = 1,
        trial_end: Optional[datetime] = None,
        payment_method: Optional[str] = None,
    ) -> RemoteSubscription:
        """Create a remote subscription with a single item."""

    @abstractmethod
    def retrieve_subscription(self, subscription_ref: str) -> RemoteSubscription:
        """Fetch a remote subscription."""

    @abstractmethod
    def update_subscription_item(
        self,
        subscription_ref: str,
        item_ref: str,
        price_ref: str,
        quantity: int,
        proration_behavior: Optional[str] = None,
    ) -> RemoteSubscription:
        """Replace the price/quantity of the subscription's single item."""

    @abstractmethod
    def cancel_subscription(self, subscription_ref: str, at_period_end: bool = False) -> RemoteSubscription:
        """Terminate now, or flag for termination at the period end."""

    @abstractmethod
    def resume_subscription(self, subscription_ref: str) -> RemoteSubscription:
        """Undo a pending cancel-at-period-end."""

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_schedule(self, subscription_ref: str) -> RemoteSchedule:
        """Create a schedule that takes over an existing subscription."""

    @abstractmethod
    def update_schedule(self, schedule_ref: str, phases: List[SchedulePhase]) -> RemoteSchedule:
        """Replace the phases of a schedule."""

    @abstractmethod
    def release_schedule(self, schedule_ref: str) -> RemoteSchedule:
        """Detach a schedule, leaving the subscription as it currently is."""

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    @abstractmethod
    def preview_invoice(
        self,
        customer_ref: str,
        subscription_ref: str,
        item_ref: str,
        price_ref: str,
        quantity: int,
        proration_behavior: str = ALWAYS_INVOICE,
    ) -> RemoteInvoice:
        """Simulate the upcoming invoice after an item change."""

    def preview_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        quantity: int = 1,
        trial_end: Optional[datetime] = None,
    ) -> RemoteInvoice:
        """Price a new subscription without creating it."""
        raise NotImplementedError(f'{type(self).__name__} cannot preview new subscriptions')

    @abstractmethod
    def create_invoice(self, customer_ref: str, subscription_ref: str) -> RemoteInvoice:
        """Create an invoice for pending items of a subscription."""

    @abstractmethod
    def pay_invoice(self, invoice_ref: str) -> RemoteInvoice:
        """Attempt to collect an invoice now."""
