# =============================================================================
# Billing Core - Plan Catalog Tests
# =============================================================================

import pytest

from billing.models.plan import Plan, BillingCycle
from billing.services.catalog import PlanCatalog
from billing.services.exceptions import PlanNotFound


class TestPlanCatalog:
    """Tests for PlanCatalog lookups and seeding."""

    def test_get(self, plans):
        """Plans are found by id."""
        plan = plans['pro_monthly']
        assert PlanCatalog().get(plan.id).slug == 'pro_monthly'

    def test_get_missing(self, app):
        """An unknown id raises PlanNotFound."""
        with pytest.raises(PlanNotFound) as excinfo:
            PlanCatalog().get(999)
        assert excinfo.value.to_dict()['code'] == 'plan_not_found'

    def test_by_tier_cycle(self, plans):
        """tier/cycle resolves through the slug."""
        plan = PlanCatalog().by_tier_cycle('starter', 'annual')
        assert plan.cycle == BillingCycle.ANNUAL
        assert plan.amount == 9000

    def test_by_tier_cycle_unknown_cycle(self, plans):
        """An unknown cycle is a lookup miss."""
        with pytest.raises(PlanNotFound):
            PlanCatalog().by_tier_cycle('pro', 'weekly')

    def test_price_table(self, plans):
        """price_table maps every slug to its unit amount."""
        assert PlanCatalog().price_table() == {
            'starter_monthly': 900,
            'starter_annual': 9000,
            'pro_monthly': 2900,
            'pro_annual': 29000,
        }

    def test_seed_is_idempotent(self, app):
        """Seeding twice creates each plan once."""
        catalog = PlanCatalog()
        seed = app.config['BILLING_PLANS']

        assert catalog.seed(seed) == len(seed)
        assert catalog.seed(seed) == 0
        assert Plan.query.count() == len(seed)
        assert catalog.by_slug('pro_monthly').gateway_price_ref == 'price_pro_monthly'
