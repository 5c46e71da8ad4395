"""
Balance ledger.

Two paths touch the subject's balance:
- apply_credit pushes a credit to the gateway before a subscription starts,
  and zeroes the local mirror
- pull_remote_balance copies a negative gateway balance into the local mirror

Local balance is never pushed to the gateway.
"""
from flask import current_app

from billing.extensions import db
from billing.models.subject import BillingSubject
from billing.services.gateways.base import BalanceTransaction, GatewayClient


class BalanceLedger:
    """Reconciles the subject balance with the gateway customer balance."""

    def __init__(self, gateway: GatewayClient, currency: str = None):
        self.gateway = gateway
        self.currency = currency or current_app.config.get('BILLING_CURRENCY', 'usd')

    def ensure_customer(self, subject: BillingSubject) -> str:
        """Get or create the gateway customer for the subject.

        Returns:
            Gateway customer reference
        """
        if subject.gateway_customer_ref:
            return subject.gateway_customer_ref

        customer = self.gateway.create_customer(
            subject.email,
            metadata={'subject_id': str(subject.id)},
        )
        subject.gateway_customer_ref = customer.id
        db.session.commit()

        current_app.logger.info(f'Gateway customer {customer.id} created for subject {subject.id}')
        return customer.id

    def apply_credit(self, subject: BillingSubject, amount: int) -> BalanceTransaction:
        """Credit ``amount`` (positive, minor units) to the subject on the gateway."""
        if amount <= 0:
            raise ValueError('Credit amount must be positive')

        customer_ref = self.ensure_customer(subject)
        transaction = self.gateway.create_balance_transaction(customer_ref, -amount, self.currency)

        subject.clear_balance()
        db.session.commit()

        current_app.logger.info(f'Credit of {amount} applied for subject {subject.id}')
        return transaction

    def remote_balance(self, subject: BillingSubject) -> int:
        """Current gateway balance of the subject (0 without a customer record)."""
        if not subject.gateway_customer_ref:
            return 0
        return self.gateway.retrieve_customer(subject.gateway_customer_ref).balance

    def pull_remote_balance(self, subject: BillingSubject) -> int:
        """Add a negative gateway balance to the local mirror.

        Returns:
            The gateway balance that was read
        """
        balance = self.remote_balance(subject)
        if balance < 0:
            subject.add_balance(balance)
            db.session.commit()
        return balance

    def resync(self, subject: BillingSubject) -> int:
        """Reset the local mirror and pull the gateway balance down again."""
        subject.clear_balance()
        db.session.commit()
        return self.pull_remote_balance(subject)
