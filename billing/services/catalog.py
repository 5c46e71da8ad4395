"""
Plan catalog service.
Read-only lookups used by the lifecycle core, plus the seed used by the CLI.
"""
from typing import Dict, Iterable

from billing.extensions import db
from billing.models.plan import Plan, BillingCycle
from billing.services.exceptions import PlanNotFound


class PlanCatalog:
    """Lookup of plans by id, slug or tier/cycle."""

    def get(self, plan_id: int) -> Plan:
        plan = db.session.get(Plan, plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    def by_slug(self, slug: str) -> Plan:
        plan = Plan.query.filter_by(slug=slug).first()
        if plan is None:
            raise PlanNotFound(slug)
        return plan

    def by_tier_cycle(self, tier: str, cycle) -> Plan:
        try:
            cycle = BillingCycle(cycle)
        except ValueError:
            raise PlanNotFound(Plan.make_slug(tier, cycle)) from None
        return self.by_slug(Plan.make_slug(tier, cycle))

    def price_table(self) -> Dict[str, int]:
        """Unit amount of every plan, keyed by slug."""
        return {plan.slug: plan.amount for plan in Plan.query.all()}

    def seed(self, plans: Iterable[dict]) -> int:
        """Insert missing plans. Existing slugs are left untouched.

        Args:
            plans: Dicts with tier, cycle, amount, gateway_price_ref and optional currency

        Returns:
            Number of plans created
        """
        created = 0
        for entry in plans:
            cycle = BillingCycle(entry['cycle'])
            slug = Plan.make_slug(entry['tier'], cycle)
            if Plan.query.filter_by(slug=slug).first() is not None:
                continue

            db.session.add(Plan(
                slug=slug,
                tier=entry['tier'],
                cycle=cycle,
                gateway_price_ref=entry['gateway_price_ref'],
                amount=entry['amount'],
                currency=entry.get('currency', 'usd'),
            ))
            created += 1

        db.session.commit()
        return created
