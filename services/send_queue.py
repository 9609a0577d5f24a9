# services/send_queue.py
"""
Send Queue
Durable per-recipient work items with claim leases and retry backoff.

Workers coordinate only through the queue_items table: every claim and every
outcome is a conditional UPDATE, and a rowcount of zero means another worker
owns the row.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select, update

from core.database_models import Campaign, CampaignStatus, QueueItem, QueueStatus, TERMINAL_QUEUE_STATUSES

logger = logging.getLogger(__name__)

# Statuses an item can hold while a claim on it is still open: delivery events
# may move a submitted item past ``sent`` before its worker finalizes it
OPEN_CLAIM_STATUSES = (
    QueueStatus.PROCESSING.value,
    QueueStatus.DELIVERED.value,
    QueueStatus.BOUNCED.value,
)


def compute_backoff(attempt: int, base: float = 30, factor: float = 2, cap: float = 3600,
                    jitter: float = 0.2, rng: random.Random = None) -> float:
    """
    Delay in seconds before retry number ``attempt`` (1-based)

    Exponential growth capped at ``cap``, then scaled down by up to
    ``jitter`` so synchronized failures spread out. Never exceeds ``cap``.
    """
    rng = rng or random
    delay = min(cap, base * factor ** max(attempt - 1, 0))
    if jitter:
        delay *= rng.uniform(1 - jitter, 1)
    return delay


class SendQueue:
    """Claim and outcome transitions for QueueItems"""

    def __init__(self, config, rng: random.Random = None):
        self.lease = timedelta(seconds=config.CLAIM_LEASE_SECONDS)
        self.batch_size = config.DISPATCH_BATCH_SIZE
        self.retry_base = config.RETRY_BASE_SECONDS
        self.retry_factor = config.RETRY_FACTOR
        self.retry_cap = config.RETRY_CAP_SECONDS
        self.retry_jitter = config.RETRY_JITTER
        self.rng = rng or random.Random()

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(seconds=compute_backoff(
            attempt, base=self.retry_base, factor=self.retry_factor, cap=self.retry_cap,
            jitter=self.retry_jitter, rng=self.rng,
        ))

    # Claiming

    def _candidates(self, session, limit: int, campaign_id=None, now: datetime = None):
        """Claimable rows as (id, status, claimed_at) observations"""
        claimable = or_(
            and_(QueueItem.status == QueueStatus.PENDING.value, QueueItem.next_attempt_at <= now),
            and_(
                QueueItem.status.in_(OPEN_CLAIM_STATUSES),
                QueueItem.claimed_by.isnot(None),
                QueueItem.claimed_at < now - self.lease,
            ),
        )
        query = (
            select(QueueItem.id, QueueItem.status, QueueItem.claimed_at)
            .join(Campaign, Campaign.id == QueueItem.campaign_id)
            .where(claimable, Campaign.status == CampaignStatus.SENDING.value)
            .order_by(QueueItem.priority.desc(), QueueItem.next_attempt_at)
            .limit(limit)
        )
        if campaign_id is not None:
            query = query.where(QueueItem.campaign_id == campaign_id)
        if session.get_bind().dialect.name == 'postgresql':
            query = query.with_for_update(of=QueueItem, skip_locked=True)
        return session.execute(query).all()

    def _compare_and_swap(self, session, item_id, observed_status: str, observed_claimed_at: Optional[datetime],
                          worker_id: str, now: datetime) -> bool:
        claimed_at_matches = (QueueItem.claimed_at.is_(None) if observed_claimed_at is None
                              else QueueItem.claimed_at == observed_claimed_at)
        result = session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == observed_status, claimed_at_matches)
            .values(
                status=case(
                    (QueueItem.status == QueueStatus.PENDING.value, QueueStatus.PROCESSING.value),
                    else_=QueueItem.status,
                ),
                claimed_by=worker_id,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_batch(self, session, worker_id: str, limit: int = None, campaign_id=None,
                    now: datetime = None) -> List[QueueItem]:
        """
        Claim up to ``limit`` items for ``worker_id`` and commit the claims

        Only items of campaigns currently in ``sending`` are claimable, so a
        paused campaign stops handing out work immediately.
        """
        now = now or datetime.utcnow()
        limit = limit or self.batch_size

        claimed_ids = []
        lost = 0
        for item_id, status, claimed_at in self._candidates(session, limit, campaign_id, now):
            if self._compare_and_swap(session, item_id, status, claimed_at, worker_id, now):
                claimed_ids.append(item_id)
                if status != QueueStatus.PENDING.value:
                    logger.warning(f"Reclaimed queue item {item_id} after lease expiry")
            else:
                lost += 1
        session.commit()

        if lost:
            logger.debug(f"Worker {worker_id} lost {lost} claim races")
        if not claimed_ids:
            return []

        items = session.execute(
            select(QueueItem).where(QueueItem.id.in_(claimed_ids)).execution_options(populate_existing=True)
        ).scalars().all()
        logger.info(f"Worker {worker_id} claimed {len(items)} queue items")
        return items

    # Outcomes

    def _guarded_update(self, session, item: QueueItem, worker_id: str, **values) -> bool:
        values.setdefault('updated_at', datetime.utcnow())
        result = session.execute(
            update(QueueItem)
            .where(
                QueueItem.id == item.id,
                QueueItem.claimed_by == worker_id,
                QueueItem.status == QueueStatus.PROCESSING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Worker {worker_id} no longer owns queue item {item.id}, outcome discarded")
            return False

        for key, value in values.items():
            setattr(item, key, value)
        return True

    def record_submission(self, session, item: QueueItem, worker_id: str, provider_message_id: str) -> bool:
        """Persist the transport's message id before the item is finalized"""
        return self._guarded_update(session, item, worker_id, provider_message_id=provider_message_id)

    def _finalize_submission(self, session, item: QueueItem, worker_id: str, now: datetime, **values) -> bool:
        """
        Close the claim on an accepted item

        ``processing`` becomes ``sent``. A ``delivered`` or ``bounced`` status
        applied by an event while the claim was open is kept.
        """
        result = session.execute(
            update(QueueItem)
            .where(
                QueueItem.id == item.id,
                QueueItem.claimed_by == worker_id,
                QueueItem.status.in_(OPEN_CLAIM_STATUSES),
            )
            .values(
                status=case(
                    (QueueItem.status == QueueStatus.PROCESSING.value, QueueStatus.SENT.value),
                    else_=QueueItem.status,
                ),
                attempt_count=QueueItem.attempt_count + 1,
                sent_at=func.coalesce(QueueItem.sent_at, now),
                claimed_by=None,
                claimed_at=None,
                updated_at=now,
                **values
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Worker {worker_id} no longer owns queue item {item.id}, outcome discarded")
            return False

        session.refresh(item)
        return True

    def mark_sent(self, session, item: QueueItem, worker_id: str, provider_message_id: str,
                  now: datetime = None) -> bool:
        return self._finalize_submission(
            session, item, worker_id, now or datetime.utcnow(),
            provider_message_id=provider_message_id,
            last_error=None,
            error_category=None,
        )

    def mark_already_sent(self, session, item: QueueItem, worker_id: str, now: datetime = None) -> bool:
        """Finalize an item whose submission survived a worker crash"""
        logger.info(f"Queue item {item.id} already submitted as {item.provider_message_id}, not resending")
        return self._finalize_submission(session, item, worker_id, now or datetime.utcnow())

    def mark_transient_failure(self, session, item: QueueItem, worker_id: str, error: str,
                               category: str = 'transient', now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        attempts = item.attempt_count + 1

        if attempts >= item.max_attempts:
            logger.warning(f"Queue item {item.id} exhausted {item.max_attempts} attempts: {error}")
            return self._guarded_update(
                session, item, worker_id,
                status=QueueStatus.FAILED.value,
                attempt_count=attempts,
                last_error=error,
                error_category='max_attempts_exceeded',
                claimed_by=None,
                claimed_at=None,
            )

        next_attempt_at = now + self.backoff(attempts)
        logger.info(f"Queue item {item.id} attempt {attempts} failed ({category}), retry at {next_attempt_at}")
        return self._guarded_update(
            session, item, worker_id,
            status=QueueStatus.PENDING.value,
            attempt_count=attempts,
            next_attempt_at=next_attempt_at,
            last_error=error,
            error_category=category,
            claimed_by=None,
            claimed_at=None,
        )

    def mark_permanent_failure(self, session, item: QueueItem, worker_id: str, error: str,
                               category: str = 'permanent') -> bool:
        logger.warning(f"Queue item {item.id} failed permanently ({category}): {error}")
        return self._guarded_update(
            session, item, worker_id,
            status=QueueStatus.FAILED.value,
            attempt_count=item.attempt_count + 1,
            last_error=error,
            error_category=category,
            claimed_by=None,
            claimed_at=None,
        )

    # Inspection

    def counts_by_status(self, session, campaign_id) -> Dict[str, int]:
        rows = session.execute(
            select(QueueItem.status, func.count(QueueItem.id))
            .where(QueueItem.campaign_id == campaign_id)
            .group_by(QueueItem.status)
        ).all()
        counts = {status.value: 0 for status in QueueStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def is_drained(self, session, campaign_id) -> bool:
        """True when every item of the campaign reached a terminal status"""
        outstanding = session.execute(
            select(func.count(QueueItem.id)).where(
                QueueItem.campaign_id == campaign_id,
                QueueItem.status.notin_(TERMINAL_QUEUE_STATUSES),
            )
        ).scalar_one()
        return outstanding == 0
