"""
Subscription model for recurring billing.
Local mirror of one gateway subscription: plan, quantity, lifecycle status and
the boundaries (trial end, termination) the gateway reported.
"""
import enum

from billing.extensions import db
from billing.utils.dates import utcnow


class PaymentGateway(str, enum.Enum):
    """Payment providers a subscription can live on."""
    STRIPE = 'stripe'


class SubscriptionStatus(str, enum.Enum):
    """Local lifecycle statuses."""
    TRIALING = 'trialing'
    ACTIVE = 'active'
    GRACE_PERIOD = 'grace_period'
    CANCELED = 'canceled'


# Statuses that keep a remote subscription alive
LIVE_STATUSES = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
)


class Subscription(db.Model):
    """One billing relationship for a subject."""

    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(
        db.Integer,
        db.ForeignKey('billing_subjects.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    plan_id = db.Column(db.Integer, db.ForeignKey('plans.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    payment_gateway = db.Column(
        db.Enum(PaymentGateway, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentGateway.STRIPE,
    )
    gateway_subscription_ref = db.Column(
        db.String(255), unique=True, nullable=True, index=True,
    )

    status = db.Column(
        db.Enum(SubscriptionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )

    # Lifecycle boundaries
    starts_at = db.Column(db.DateTime, nullable=True)
    trial_ends_at = db.Column(db.DateTime, nullable=True)
    ends_at = db.Column(db.DateTime, nullable=True)

    # Set by cancel() for an external reactivation flow
    next_plan_id = db.Column(db.Integer, db.ForeignKey('plans.id'), nullable=True)
    swapped = db.Column(db.Boolean, nullable=False, default=False)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    # Relationships
    subject = db.relationship('BillingSubject', back_populates='subscriptions')
    plan = db.relationship('Plan', foreign_keys=[plan_id])
    next_plan = db.relationship('Plan', foreign_keys=[next_plan_id])
    schedule = db.relationship(
        'SubscriptionSchedule',
        back_populates='subscription',
        uselist=False,
        cascade='all, delete-orphan',
    )

    def __repr__(self):
        return f'<Subscription subject={self.subject_id} plan={self.plan_id} status={self.status.value}>'

    @classmethod
    def current_for(cls, subject_id):
        """Most recent subscription of a subject, or None."""
        return cls.query.filter_by(subject_id=subject_id).order_by(cls.id.desc()).first()

    @property
    def is_live(self):
        """Check if the remote subscription is still alive."""
        return self.status in LIVE_STATUSES and not self.grace_expired

    @property
    def grace_expired(self):
        """Canceled at period end and the period is over."""
        return (
            self.status == SubscriptionStatus.GRACE_PERIOD
            and self.ends_at is not None
            and self.ends_at <= utcnow()
        )

    def settle(self):
        """Move an expired grace period to canceled. Returns True if the record changed."""
        if not self.grace_expired:
            return False
        self.status = SubscriptionStatus.CANCELED
        self.gateway_subscription_ref = None
        return True

    @property
    def on_trial(self):
        """Check if the subscription is within its trial."""
        return self.trial_ends_at is not None and self.trial_ends_at > utcnow()

    @property
    def on_grace_period(self):
        """Canceled at period end but not yet terminated."""
        return (
            self.status == SubscriptionStatus.GRACE_PERIOD
            and self.ends_at is not None
            and self.ends_at > utcnow()
        )

    def to_dict(self):
        """Serialize subscription to dict."""
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'plan_id': self.plan_id,
            'quantity': self.quantity,
            'payment_gateway': self.payment_gateway.value,
            'status': self.status.value,
            'starts_at': self.starts_at.isoformat() if self.starts_at else None,
            'trial_ends_at': self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            'ends_at': self.ends_at.isoformat() if self.ends_at else None,
            'next_plan_id': self.next_plan_id,
            'swapped': self.swapped,
            'has_schedule': self.schedule is not None,
        }
