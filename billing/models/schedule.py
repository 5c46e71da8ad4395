"""
Subscription schedule model.
A pending plan change that activates at a future billing boundary.
"""
from billing.extensions import db
from billing.models.subscription import PaymentGateway
from billing.utils.dates import utcnow


class SubscriptionSchedule(db.Model):
    """Deferred plan change. At most one per subscription (unique subscription_id)."""

    __tablename__ = 'subscription_schedules'

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(
        db.Integer,
        db.ForeignKey('billing_subjects.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey('subscriptions.id', ondelete='CASCADE'),
        unique=True,
        nullable=False,
    )
    payment_gateway = db.Column(
        db.Enum(PaymentGateway, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentGateway.STRIPE,
    )

    # Remote schedule object (None for preview-only and pending-subscription schedules)
    gateway_schedule_ref = db.Column(db.String(255), nullable=True)

    # Opaque gateway data, e.g. {'pending_subscription_ref': 'sub_...'}
    data = db.Column(db.JSON, nullable=False, default=dict)

    starts_at = db.Column(db.DateTime, nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey('plans.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Relationships
    subscription = db.relationship('Subscription', back_populates='schedule')
    plan = db.relationship('Plan')

    def __repr__(self):
        return f'<SubscriptionSchedule subscription={self.subscription_id} starts_at={self.starts_at}>'

    @property
    def pending_subscription_ref(self):
        """Remote subscription created ahead of time, if any."""
        return (self.data or {}).get('pending_subscription_ref')

    def to_dict(self):
        """Serialize schedule to dict."""
        return {
            'id': self.id,
            'subscription_id': self.subscription_id,
            'plan_id': self.plan_id,
            'quantity': self.quantity,
            'starts_at': self.starts_at.isoformat(),
        }
