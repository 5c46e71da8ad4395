# =============================================================================
# Billing Core - Schedule Store Tests
# =============================================================================

from datetime import timedelta

import pytest

from billing.models.schedule import SubscriptionSchedule
from billing.services.events import SubscriptionEvent, signal_for
from billing.services.exceptions import GatewayError, ScheduleConflict
from billing.services.schedule_store import ScheduleStore
from billing.utils.dates import utcnow


@pytest.fixture
def store(app, gateway):
    return ScheduleStore(gateway)


@pytest.fixture
def starts_at():
    return (utcnow() + timedelta(days=20)).replace(microsecond=0)


class TestScheduleStore:
    """Tests for ScheduleStore create / release."""

    def test_create(self, store, plans, active_subscription, starts_at, events):
        """A schedule is persisted and announced."""
        schedule = store.create(active_subscription, plans['starter_monthly'], 2, starts_at,
                                gateway_schedule_ref='sub_sched_9')

        assert store.find_for(active_subscription) is schedule
        assert schedule.subject_id == active_subscription.subject_id
        assert schedule.payment_gateway == active_subscription.payment_gateway
        assert schedule.starts_at == starts_at
        assert events[0][0] == SubscriptionEvent.SCHEDULE_CREATED

    def test_create_twice_conflicts(self, store, plans, active_subscription, starts_at):
        """A second schedule is refused before touching the database."""
        store.create(active_subscription, plans['starter_monthly'], 1, starts_at)

        with pytest.raises(ScheduleConflict):
            store.create(active_subscription, plans['starter_annual'], 1, starts_at)

    def test_release_schedule_object(self, store, plans, active_subscription, starts_at, gateway, events):
        """Schedule objects are released remotely before the local delete."""
        remote = gateway.create_schedule('sub_live')
        schedule = store.create(active_subscription, plans['starter_monthly'], 1, starts_at,
                                gateway_schedule_ref=remote.id)

        store.release(schedule)

        assert ('release_schedule', remote.id) in gateway.calls
        assert SubscriptionSchedule.query.count() == 0
        assert events[-1][0] == SubscriptionEvent.SCHEDULE_RELEASED

    def test_release_pending_subscription(self, store, plans, active_subscription, starts_at, gateway):
        """A pending shadow subscription is cancelled."""
        pending = gateway.add_subscription('sub_pending', 'price_pro_annual')
        schedule = store.create(active_subscription, plans['pro_annual'], 1, starts_at,
                                data={'pending_subscription_ref': pending.id})

        store.release(schedule)

        assert ('cancel_subscription', 'sub_pending', False) in gateway.calls
        assert SubscriptionSchedule.query.count() == 0

    def test_release_preview_only(self, store, plans, active_subscription, starts_at, gateway):
        """A preview-only schedule has nothing remote to release."""
        schedule = store.create(active_subscription, plans['pro_annual'], 1, starts_at,
                                data={'preview_total': 29000})

        store.release(schedule)

        assert gateway.calls == []
        assert SubscriptionSchedule.query.count() == 0

    def test_remote_failure_keeps_local(self, store, plans, active_subscription, starts_at, gateway,
                                        gateway_error):
        """The local record is never deleted before the remote release succeeds."""
        remote = gateway.create_schedule('sub_live')
        schedule = store.create(active_subscription, plans['starter_monthly'], 1, starts_at,
                                gateway_schedule_ref=remote.id)
        gateway.fail_on['release_schedule'] = gateway_error

        with pytest.raises(GatewayError):
            store.release(schedule)

        assert store.find_for(active_subscription) is not None

    def test_events_sent_by_subject(self, store, plans, subject, active_subscription, starts_at, gateway):
        """Receivers connected for one subject see its schedule events."""
        received = []

        def receiver(sender, **payload):
            received.append(sender)

        created = signal_for(SubscriptionEvent.SCHEDULE_CREATED)
        released = signal_for(SubscriptionEvent.SCHEDULE_RELEASED)
        created.connect(receiver, sender=subject)
        released.connect(receiver, sender=subject)
        try:
            remote = gateway.create_schedule('sub_live')
            schedule = store.create(active_subscription, plans['starter_monthly'], 1, starts_at,
                                    gateway_schedule_ref=remote.id)
            store.release(schedule)
        finally:
            created.disconnect(receiver)
            released.disconnect(receiver)

        assert received == [subject, subject]
