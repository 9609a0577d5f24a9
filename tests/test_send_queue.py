import random
from datetime import datetime, timedelta

import pytest

from core.database_models import PRIORITY_RANK, CampaignStatus, QueueItem, QueueStatus
from services.event_recorder import EventRecorder
from services.send_queue import compute_backoff


@pytest.fixture
def pending_campaign(factory):
    subscribers = [factory.subscriber() for _ in range(3)]
    return factory.sending_campaign(subscribers)


class TestComputeBackoff:
    def test_exponential_without_jitter(self):
        assert compute_backoff(1, jitter=0) == 30
        assert compute_backoff(2, jitter=0) == 60
        assert compute_backoff(3, jitter=0) == 120

    def test_capped(self):
        assert compute_backoff(20, jitter=0) == 3600

    def test_jitter_stays_within_bounds(self):
        rng = random.Random(42)
        for attempt in range(1, 15):
            ceiling = min(3600, 30 * 2 ** (attempt - 1))
            delay = compute_backoff(attempt, rng=rng)
            assert ceiling * 0.8 <= delay <= ceiling
            assert delay <= 3600


class TestClaiming:
    def test_claim_marks_items_processing(self, session_factory, send_queue, pending_campaign):
        session = session_factory()
        items = send_queue.claim_batch(session, 'worker-a')
        session.close()

        assert len(items) == 3
        assert all(item.status == QueueStatus.PROCESSING.value for item in items)
        assert all(item.claimed_by == 'worker-a' for item in items)

    def test_compare_and_swap_has_one_winner(self, session_factory, send_queue, pending_campaign):
        now = datetime.utcnow()
        session = session_factory()
        try:
            item_id, status, claimed_at = send_queue._candidates(session, 10, now=now)[0]

            assert send_queue._compare_and_swap(session, item_id, status, claimed_at, 'worker-a', now)
            session.commit()
            # Worker B acting on the same stale observation loses
            assert not send_queue._compare_and_swap(session, item_id, status, claimed_at, 'worker-b', now)
            session.commit()

            item = session.get(QueueItem, item_id)
            assert item.claimed_by == 'worker-a'
        finally:
            session.close()

    def test_second_worker_gets_nothing_already_claimed(self, session_factory, send_queue, pending_campaign):
        session = session_factory()
        first = send_queue.claim_batch(session, 'worker-a')
        second = send_queue.claim_batch(session, 'worker-b')
        session.close()

        assert len(first) == 3
        assert second == []

    def test_expired_lease_is_reclaimed(self, session_factory, send_queue, pending_campaign):
        now = datetime.utcnow()
        session = session_factory()
        try:
            send_queue.claim_batch(session, 'worker-a', now=now)

            assert send_queue.claim_batch(session, 'worker-b', now=now + timedelta(seconds=60)) == []
            reclaimed = send_queue.claim_batch(session, 'worker-b', now=now + timedelta(seconds=301))
            assert len(reclaimed) == 3
            assert all(item.claimed_by == 'worker-b' for item in reclaimed)
        finally:
            session.close()

    def test_future_retry_not_claimable(self, session_factory, send_queue, factory):
        subscriber = factory.subscriber()
        campaign, _ = factory.sending_campaign([])
        factory.queue_item(campaign, subscriber, next_attempt_at=datetime.utcnow() + timedelta(minutes=10))

        session = session_factory()
        assert send_queue.claim_batch(session, 'worker-a') == []
        session.close()

    def test_priority_then_due_time_orders_claims(self, session_factory, send_queue, factory):
        campaign, _ = factory.sending_campaign([])
        now = datetime.utcnow()
        factory.queue_item(campaign, factory.subscriber(), priority=PRIORITY_RANK['low'],
                           next_attempt_at=now - timedelta(hours=1))
        urgent = factory.queue_item(campaign, factory.subscriber(), priority=PRIORITY_RANK['urgent'],
                                    next_attempt_at=now - timedelta(seconds=1))
        factory.queue_item(campaign, factory.subscriber(), next_attempt_at=now - timedelta(seconds=5))
        older_normal = factory.queue_item(campaign, factory.subscriber(), next_attempt_at=now - timedelta(minutes=5))

        session = session_factory()
        try:
            candidates = send_queue._candidates(session, 4, now=now)
            claimed = send_queue.claim_batch(session, 'worker-a', limit=2, now=now)
        finally:
            session.close()

        assert candidates[0].id == urgent.id
        assert candidates[1].id == older_normal.id
        assert {item.id for item in claimed} == {urgent.id, older_normal.id}

    def test_paused_campaign_not_claimable(self, session_factory, send_queue, factory):
        subscriber = factory.subscriber()
        campaign = factory.campaign(status=CampaignStatus.PAUSED.value)
        factory.queue_item(campaign, subscriber)

        session = session_factory()
        assert send_queue.claim_batch(session, 'worker-a') == []
        session.close()


class TestOutcomes:
    def test_lost_lease_discards_outcome(self, session_factory, send_queue, pending_campaign, load):
        now = datetime.utcnow()
        session = session_factory()
        try:
            item = send_queue.claim_batch(session, 'worker-a', now=now, limit=1)[0]
            send_queue.claim_batch(session, 'worker-b', now=now + timedelta(seconds=301))

            assert not send_queue.mark_sent(session, item, 'worker-a', '<late@test.local>')
            session.commit()
        finally:
            session.close()

        assert load(QueueItem, item.id).claimed_by == 'worker-b'

    def test_transient_failure_schedules_retry(self, session_factory, send_queue, pending_campaign, load):
        session = session_factory()
        try:
            item = send_queue.claim_batch(session, 'worker-a', limit=1)[0]
            assert send_queue.mark_transient_failure(session, item, 'worker-a', '421 try later')
            session.commit()
        finally:
            session.close()

        stored = load(QueueItem, item.id)
        assert stored.status == QueueStatus.PENDING.value
        assert stored.attempt_count == 1
        assert stored.next_attempt_at > datetime.utcnow()
        assert stored.claimed_by is None

    def test_max_attempts_moves_to_failed(self, session_factory, send_queue, factory, load):
        subscriber = factory.subscriber()
        campaign, _ = factory.sending_campaign([])
        item = factory.queue_item(campaign, subscriber, max_attempts=2, attempt_count=1)

        session = session_factory()
        try:
            claimed = send_queue.claim_batch(session, 'worker-a')[0]
            assert send_queue.mark_transient_failure(session, claimed, 'worker-a', '451 local error')
            session.commit()
        finally:
            session.close()

        stored = load(QueueItem, item.id)
        assert stored.status == QueueStatus.FAILED.value
        assert stored.error_category == 'max_attempts_exceeded'
        assert stored.attempt_count == stored.max_attempts

    def test_counts_and_drained(self, session_factory, send_queue, pending_campaign):
        campaign, _ = pending_campaign
        session = session_factory()
        try:
            items = send_queue.claim_batch(session, 'worker-a')
            for item in items:
                send_queue.mark_sent(session, item, 'worker-a', f"<{item.id}@test.local>")
            session.commit()

            counts = send_queue.counts_by_status(session, campaign.id)
            assert counts[QueueStatus.SENT.value] == 3
            assert counts[QueueStatus.PENDING.value] == 0
            assert send_queue.is_drained(session, campaign.id)
        finally:
            session.close()

    def test_mark_sent_keeps_status_applied_while_claimed(self, session_factory, send_queue, pending_campaign,
                                                         config, load):
        session = session_factory()
        try:
            item = send_queue.claim_batch(session, 'worker-a', limit=1)[0]
            assert send_queue.record_submission(session, item, 'worker-a', '<quick@test.local>')
            session.commit()

            # Provider reports delivery before the worker closes its claim
            EventRecorder(session_factory, config).record('<quick@test.local>', 'delivered')

            assert send_queue.mark_sent(session, item, 'worker-a', '<quick@test.local>')
            session.commit()
        finally:
            session.close()

        assert item.status == QueueStatus.DELIVERED.value
        stored = load(QueueItem, item.id)
        assert stored.status == QueueStatus.DELIVERED.value
        assert stored.attempt_count == 1
        assert stored.sent_at is not None
        assert stored.claimed_by is None
