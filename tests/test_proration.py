# =============================================================================
# Billing Core - Proration Calculator Tests
# =============================================================================

from datetime import datetime
from decimal import Decimal

import pytest

from billing.models.plan import BillingCycle
from billing.services.proration import ProrationCalculator

PRICES = {
    'starter_monthly': 900,
    'starter_annual': 9000,
    'pro_monthly': 2900,
    'pro_annual': 29000,
}

START = datetime(2026, 3, 1)
END = datetime(2026, 3, 31)
HALFWAY = datetime(2026, 3, 16)


def calculator(current_amount=2900, cycle=BillingCycle.MONTHLY, quantity=1, now=HALFWAY):
    return ProrationCalculator(
        PRICES,
        current_amount=current_amount,
        current_cycle=cycle,
        current_quantity=quantity,
        period_start=START,
        period_end=END,
        now=now,
    )


class TestRemainingFraction:
    """Tests for the unused share of the period."""

    def test_halfway(self):
        """Half of the period remains at its midpoint."""
        assert calculator().remaining_fraction() == Decimal('0.5')

    def test_clamped(self):
        """Before the start and after the end stay within [0, 1]."""
        assert calculator(now=datetime(2026, 2, 1)).remaining_fraction() == 1
        assert calculator(now=datetime(2026, 4, 15)).remaining_fraction() == 0

    def test_unknown_period(self):
        """No period information counts as a full period."""
        assert ProrationCalculator(PRICES).remaining_fraction() == 1


class TestSameCycle:
    """Tests for changes within one billing cycle."""

    def test_quantity_increase(self):
        """pro_monthly x1 -> x3 halfway charges half of two seats."""
        assert calculator().calculate(3, 'pro', 'monthly') == 2900

    def test_tier_decrease_is_credit(self):
        """Moving to a cheaper tier halfway credits half the difference."""
        assert calculator().calculate(1, 'starter', BillingCycle.MONTHLY) == -1000

    def test_rounds_half_up(self):
        """Fractions of a cent are rounded half-up."""
        table = {'odd_monthly': 901}
        result = ProrationCalculator(table, period_start=START, period_end=END, now=HALFWAY).calculate(
            1, 'odd', 'monthly',
        )
        assert result == 451

    def test_deterministic(self):
        """Same inputs, same output."""
        assert calculator().calculate(2, 'pro', 'monthly') == calculator().calculate(2, 'pro', 'monthly')


class TestCrossCycle:
    """Tests for monthly <-> annual changes."""

    def test_monthly_to_annual(self):
        """The annual plan is charged in full less the unused monthly time."""
        assert calculator().calculate(1, 'pro', 'annual') == 29000 - 1450

    def test_annual_to_monthly_credit(self):
        """Leaving an annual plan early can produce a credit."""
        result = calculator(current_amount=29000, cycle=BillingCycle.ANNUAL).calculate(1, 'starter', 'monthly')
        assert result == 900 - 14500


class TestNeverFails:
    """The calculator always returns a number."""

    @pytest.mark.parametrize('tier, cycle', [
        ('gold', 'monthly'),
        ('pro', 'weekly'),
        ('pro', None),
    ])
    def test_unknown_target(self, tier, cycle):
        """Unknown tier or cycle is estimated as zero."""
        assert calculator().calculate(2, tier, cycle) == 0

    def test_empty_table(self):
        """An empty catalog estimates zero."""
        assert ProrationCalculator({}).calculate(2, 'pro', 'monthly') == 0

    def test_no_current_plan(self):
        """Without a current plan the target is charged for the remaining time."""
        assert ProrationCalculator(PRICES).calculate(2, 'pro', 'monthly') == 5800
