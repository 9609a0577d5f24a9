# services/event_recorder.py
"""
Event Recorder
Idempotent ingestion of provider callbacks and tracking hits.

Replays of the same provider event collapse onto one row through the unique
idempotency key. Distinct occurrences (the same recipient opening twice) are
all kept, and the first row per recipient/event/fingerprint is flagged so
unique counts can be derived later.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from core.audit import record_audit_event
from core.database_models import DeliveryEvent, EventType, QueueItem, QueueStatus, Subscriber

logger = logging.getLogger(__name__)

RECORDED = 'recorded'
DUPLICATE = 'duplicate'
DROPPED = 'dropped'

# Forward-only ordering of post-acceptance statuses
STATUS_RANK = {
    QueueStatus.SENT.value: 1,
    QueueStatus.DELIVERED.value: 2,
    QueueStatus.BOUNCED.value: 3,
}

ENGAGEMENT_EVENTS = (EventType.OPEN.value, EventType.CLICK.value)


@dataclass
class RecordResult:
    status: str
    event_id: Optional[Any] = None
    reason: Optional[str] = None


def _sha256(*parts: Any) -> str:
    joined = '|'.join('' if part is None else str(part) for part in parts)
    return hashlib.sha256(joined.encode('utf-8')).hexdigest()


def normalize_timestamp(value: Any) -> datetime:
    """Naive UTC datetime from a datetime, epoch seconds or ISO-8601 string"""
    if value is None:
        return datetime.utcnow()
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def event_fingerprint(event_type: str, metadata: Dict[str, Any]) -> str:
    """Identity of a distinct occurrence for dedup purposes"""
    if event_type == EventType.OPEN.value:
        return f"{metadata.get('ip_address') or ''}|{metadata.get('user_agent') or ''}"
    if event_type == EventType.CLICK.value:
        return f"{metadata.get('ip_address') or ''}|{metadata.get('url') or ''}"
    return ''


class EventRecorder:
    """Records delivery events and applies their side effects atomically"""

    def __init__(self, session_factory, config, statistics=None):
        self.session_factory = session_factory
        self.hard_bounce_suppresses = config.HARD_BOUNCE_SUPPRESSES
        self.statistics = statistics

    def idempotency_key(self, provider_message_id: str, event_type: str, occurred_at: datetime,
                        fingerprint: str, metadata: Dict[str, Any]) -> str:
        provider_event_id = metadata.get('event_id')
        if provider_event_id:
            key = f"provider:{provider_event_id}"
            return key if len(key) <= 128 else f"provider:{_sha256(provider_event_id)}"
        return _sha256(provider_message_id, event_type, occurred_at.isoformat(), fingerprint)

    def record(self, provider_message_id: str, event_type: str, occurred_at: Any = None,
               metadata: Optional[Dict[str, Any]] = None) -> RecordResult:
        """
        Record one event

        Unknown message ids and event types are dropped with a log line, never
        raised, so a webhook batch is not rejected because of one stray event.
        """
        metadata = dict(metadata or {})

        try:
            event_type = EventType(event_type).value
        except ValueError:
            logger.warning(f"Dropping event with unknown type {event_type!r} for {provider_message_id}")
            return RecordResult(DROPPED, reason='unknown_event_type')

        try:
            occurred_at = normalize_timestamp(occurred_at)
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Dropping {event_type} event for {provider_message_id}: bad timestamp {occurred_at!r}")
            return RecordResult(DROPPED, reason='invalid_timestamp')

        session = self.session_factory()
        try:
            item = session.execute(
                select(QueueItem).where(QueueItem.provider_message_id == provider_message_id)
            ).scalar_one_or_none() if provider_message_id else None
            if item is None:
                logger.warning(f"Dropping {event_type} event for unknown message id {provider_message_id!r}")
                return RecordResult(DROPPED, reason='unknown_message')

            fingerprint = event_fingerprint(event_type, metadata)
            key = self.idempotency_key(provider_message_id, event_type, occurred_at, fingerprint, metadata)
            if session.execute(select(exists().where(DeliveryEvent.idempotency_key == key))).scalar():
                logger.debug(f"Duplicate {event_type} event for {provider_message_id}")
                return RecordResult(DUPLICATE)

            dedup_key = _sha256(item.id, event_type, fingerprint)
            first = not session.execute(select(exists().where(DeliveryEvent.dedup_key == dedup_key))).scalar()

            event = DeliveryEvent(
                queue_item_id=item.id,
                campaign_id=item.campaign_id,
                subscriber_id=item.subscriber_id,
                provider_message_id=provider_message_id,
                event_type=event_type,
                occurred_at=occurred_at,
                idempotency_key=key,
                dedup_key=dedup_key,
                is_first_occurrence=first,
                ip_address=metadata.get('ip_address'),
                user_agent=metadata.get('user_agent'),
                url=metadata.get('url'),
                bounce_type=self._bounce_type(metadata) if event_type == EventType.BOUNCE.value else None,
                payload=metadata,
            )
            session.add(event)

            self._apply_queue_effects(item, event)
            self._apply_subscriber_effects(session, item, event)

            session.commit()
        except IntegrityError:
            # Concurrent replay won the unique idempotency key
            session.rollback()
            logger.debug(f"Duplicate {event_type} event for {provider_message_id} (concurrent insert)")
            return RecordResult(DUPLICATE)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"Recorded {event_type} event {event.id} for queue item {item.id}")
        if self.statistics is not None:
            self.statistics.invalidate(item.campaign_id)
        return RecordResult(RECORDED, event_id=event.id)

    def _bounce_type(self, metadata: Dict[str, Any]) -> str:
        bounce_type = str(metadata.get('bounce_type') or 'hard').lower()
        return bounce_type if bounce_type in ('hard', 'soft') else 'hard'

    def _current_status(self, item: QueueItem) -> str:
        # Accepted by the transport; the worker has not closed its claim yet
        if item.status == QueueStatus.PROCESSING.value and item.provider_message_id:
            return QueueStatus.SENT.value
        return item.status

    def _advance(self, item: QueueItem, target: str) -> bool:
        current = STATUS_RANK.get(self._current_status(item))
        if current is None or STATUS_RANK[target] <= current:
            return False
        item.status = target
        return True

    def _apply_queue_effects(self, item: QueueItem, event: DeliveryEvent) -> None:
        if event.event_type == EventType.DELIVERED.value or event.event_type in ENGAGEMENT_EVENTS:
            # Engagement implies delivery
            if self._advance(item, QueueStatus.DELIVERED.value):
                item.delivered_at = event.occurred_at
        elif event.event_type == EventType.BOUNCE.value:
            if self._advance(item, QueueStatus.BOUNCED.value):
                item.bounced_at = event.occurred_at
                item.bounce_type = event.bounce_type

    def _apply_subscriber_effects(self, session, item: QueueItem, event: DeliveryEvent) -> None:
        subscriber = session.get(Subscriber, item.subscriber_id)
        if subscriber is None:
            return

        if event.event_type in ENGAGEMENT_EVENTS:
            if subscriber.last_engagement_at is None or subscriber.last_engagement_at < event.occurred_at:
                subscriber.last_engagement_at = event.occurred_at

        elif event.event_type == EventType.BOUNCE.value:
            subscriber.bounce_count = (subscriber.bounce_count or 0) + 1
            if event.bounce_type == 'hard' and self.hard_bounce_suppresses and subscriber.hard_bounced_at is None:
                subscriber.hard_bounced_at = event.occurred_at
                record_audit_event(session, 'subscriber', subscriber.id, 'hard_bounce_suppressed',
                                   {'queue_item_id': str(item.id), 'campaign_id': str(item.campaign_id)})

        elif event.event_type == EventType.COMPLAINT.value:
            if subscriber.spam_complaint_at is None:
                subscriber.spam_complaint_at = event.occurred_at
                record_audit_event(session, 'subscriber', subscriber.id, 'complaint_suppressed',
                                   {'queue_item_id': str(item.id), 'campaign_id': str(item.campaign_id)})

        elif event.event_type == EventType.UNSUBSCRIBE.value:
            if subscriber.unsubscribed_at is None:
                subscriber.unsubscribed_at = event.occurred_at
                subscriber.unsubscribe_reason = (event.payload or {}).get('reason')
                record_audit_event(session, 'subscriber', subscriber.id, 'unsubscribed',
                                   {'queue_item_id': str(item.id), 'campaign_id': str(item.campaign_id),
                                    'source': (event.payload or {}).get('source', 'provider')})
