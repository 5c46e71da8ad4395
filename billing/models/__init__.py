"""
SQLAlchemy models for the billing core.
All models are imported here for easy access.
"""
from billing.models.subject import BillingSubject
from billing.models.plan import Plan, BillingCycle
from billing.models.subscription import (
    Subscription,
    SubscriptionStatus,
    PaymentGateway,
    LIVE_STATUSES,
)
from billing.models.schedule import SubscriptionSchedule

__all__ = [
    'BillingSubject',
    'Plan',
    'BillingCycle',
    'Subscription',
    'SubscriptionStatus',
    'PaymentGateway',
    'LIVE_STATUSES',
    'SubscriptionSchedule',
]
