"""
Schedule store.
Persists the single pending plan change of a subscription and keeps it in step
with the gateway: a local record is only removed after the remote release
succeeded.
"""
from datetime import datetime
from typing import Optional

from flask import current_app

from billing.extensions import db
from billing.models.plan import Plan
from billing.models.schedule import SubscriptionSchedule
from billing.models.subscription import Subscription
from billing.services.events import SubscriptionEvent, emit
from billing.services.exceptions import ScheduleConflict
from billing.services.gateways import GatewayClients
from billing.services.gateways.base import GatewayClient


class ScheduleStore:
    """Create, find and release subscription schedules."""

    def __init__(self, gateway: GatewayClient, clients: Optional[GatewayClients] = None):
        self.gateway = gateway
        self.clients = clients

    def _client_for(self, schedule: SubscriptionSchedule) -> GatewayClient:
        """Client of the gateway the schedule lives on."""
        if self.clients is None:
            return self.gateway
        return self.clients.for_tag(schedule.payment_gateway)

    @staticmethod
    def find_for(subscription: Subscription) -> Optional[SubscriptionSchedule]:
        """Live schedule of a subscription, or None."""
        return SubscriptionSchedule.query.filter_by(subscription_id=subscription.id).first()

    def create(
        self,
        subscription: Subscription,
        plan: Plan,
        quantity: int,
        starts_at: datetime,
        gateway_schedule_ref: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> SubscriptionSchedule:
        """Persist a new schedule.

        Raises:
            ScheduleConflict: The subscription already has a schedule
        """
        if self.find_for(subscription) is not None:
            raise ScheduleConflict()

        schedule = SubscriptionSchedule(
            subject_id=subscription.subject_id,
            subscription_id=subscription.id,
            payment_gateway=subscription.payment_gateway,
            gateway_schedule_ref=gateway_schedule_ref,
            data=data or {},
            starts_at=starts_at,
            plan_id=plan.id,
            quantity=quantity,
        )
        db.session.add(schedule)
        db.session.commit()

        emit(SubscriptionEvent.SCHEDULE_CREATED, subscription.subject, subscription=subscription, schedule=schedule)
        return schedule

    def release(self, schedule: SubscriptionSchedule) -> None:
        """Release a schedule remotely, then delete it locally.

        GatewayError from the remote call propagates and the local record is kept.
        """
        gateway = self._client_for(schedule)
        if schedule.gateway_schedule_ref:
            gateway.release_schedule(schedule.gateway_schedule_ref)
        elif schedule.pending_subscription_ref:
            gateway.cancel_subscription(schedule.pending_subscription_ref)

        subscription = schedule.subscription
        db.session.delete(schedule)
        db.session.commit()

        current_app.logger.info(f'Schedule released for subscription {subscription.id}')
        emit(SubscriptionEvent.SCHEDULE_RELEASED, subscription.subject, subscription=subscription, schedule=schedule)
