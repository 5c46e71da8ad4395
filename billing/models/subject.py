"""
Billing subject model.
The account a subscription bills: contact, stored payment instrument and the
local mirror of its gateway balance.
"""
from billing.extensions import db
from billing.utils.dates import utcnow


class BillingSubject(db.Model):
    """Authenticated party that owns subscriptions."""

    __tablename__ = 'billing_subjects'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)

    # Gateway customer record (created on first use)
    gateway_customer_ref = db.Column(db.String(255), unique=True, nullable=True)

    # Stored default payment instrument
    default_payment_method_id = db.Column(db.String(255), nullable=True)
    card_last_four = db.Column(db.String(4), nullable=True)

    # Minor units; negative = credit in the subject's favour
    balance = db.Column(db.Integer, nullable=False, default=0)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    # Relationships
    subscriptions = db.relationship(
        'Subscription',
        back_populates='subject',
        order_by='Subscription.id',
        cascade='all, delete-orphan',
    )

    def __repr__(self):
        return f'<BillingSubject {self.email}>'

    @property
    def has_payment_method(self):
        """Check if a usable payment instrument is on file."""
        return bool(self.default_payment_method_id or self.card_last_four)

    def add_balance(self, amount: int) -> None:
        """Add a signed amount to the local balance mirror."""
        self.balance = (self.balance or 0) + amount

    def clear_balance(self) -> None:
        """Zero the local balance mirror."""
        self.balance = 0

    def to_dict(self):
        """Serialize subject to dict."""
        return {
            'id': self.id,
            'email': self.email,
            'gateway_customer_ref': self.gateway_customer_ref,
            'has_payment_method': self.has_payment_method,
            'balance': self.balance,
        }
