"""
Plan catalog model.
Immutable from the lifecycle core's point of view; owned by the catalog.
"""
import enum

from billing.extensions import db


class BillingCycle(str, enum.Enum):
    """Billing cycles offered by the catalog."""
    MONTHLY = 'monthly'
    ANNUAL = 'annual'

    @property
    def months(self):
        """Length of one cycle in months."""
        return 12 if self is BillingCycle.ANNUAL else 1

    @property
    def interval(self):
        """Gateway interval name for one cycle."""
        return 'year' if self is BillingCycle.ANNUAL else 'month'


class Plan(db.Model):
    """A priced tier/cycle combination."""

    __tablename__ = 'plans'

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    tier = db.Column(db.String(50), nullable=False)
    cycle = db.Column(
        db.Enum(BillingCycle, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )
    gateway_price_ref = db.Column(db.String(255), nullable=False)

    # Cents per unit per cycle
    amount = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default='usd')

    def __repr__(self):
        return f'<Plan {self.slug}>'

    @staticmethod
    def make_slug(tier, cycle):
        """Catalog slug for a tier/cycle pair, e.g. 'pro_monthly'."""
        cycle_value = cycle.value if isinstance(cycle, BillingCycle) else cycle
        return f'{tier}_{cycle_value}'

    def to_dict(self):
        """Serialize plan to dict."""
        return {
            'id': self.id,
            'slug': self.slug,
            'tier': self.tier,
            'cycle': self.cycle.value,
            'amount': self.amount,
            'currency': self.currency,
        }
