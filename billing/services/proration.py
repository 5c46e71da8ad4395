"""
Local proration estimate.

Used when the gateway cannot preview an invoice. The result approximates what
the gateway would charge (positive) or credit (negative) for changing the
current plan to another tier/cycle/quantity right now.

Same cycle:   (target * qty - current * current_qty) * remaining
Cross cycle:  target * qty - current * current_qty * remaining

``remaining`` is the unused fraction of the current period, clamped to [0, 1]
and taken as 1 when the period is unknown. Amounts are integer minor units,
rounded half-up.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from billing.models.plan import Plan, BillingCycle


class ProrationCalculator:
    """Deterministic proration estimate. ``calculate`` never raises."""

    def __init__(
        self,
        price_table: Dict[str, int],
        current_amount: int = 0,
        current_cycle: Optional[BillingCycle] = None,
        current_quantity: int = 1,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ):
        self.price_table = price_table or {}
        self.current_amount = current_amount or 0
        self.current_cycle = current_cycle
        self.current_quantity = current_quantity or 0
        self.period_start = period_start
        self.period_end = period_end
        self.now = now

    def remaining_fraction(self) -> Decimal:
        """Unused share of the current period."""
        if self.period_start is None or self.period_end is None or self.now is None:
            return Decimal(1)

        total = (self.period_end - self.period_start).total_seconds()
        if total <= 0:
            return Decimal(1)

        left = Decimal(str((self.period_end - self.now).total_seconds())) / Decimal(str(total))
        return min(max(left, Decimal(0)), Decimal(1))

    def calculate(self, requested_quantity: int, tier: str, cycle) -> int:
        try:
            target_cycle = BillingCycle(cycle)
            target_amount = self.price_table.get(Plan.make_slug(tier, target_cycle))
        except (ValueError, TypeError):
            return 0
        if target_amount is None:
            return 0

        requested_quantity = max(int(requested_quantity or 0), 0)
        remaining = self.remaining_fraction()
        new_cost = Decimal(target_amount) * requested_quantity
        old_cost = Decimal(self.current_amount) * self.current_quantity

        if self.current_cycle is None or target_cycle == self.current_cycle:
            amount = (new_cost - old_cost) * remaining
        else:
            # The new cycle starts now: full charge, credit for unused time
            amount = new_cost - old_cost * remaining

        return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
