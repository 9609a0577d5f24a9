# services/recipient_resolver.py
"""
Recipient Resolver
Turns a campaign targeting rule into concrete QueueItems at send time
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, not_, or_, select
from sqlalchemy.dialects import postgresql, sqlite

from core.database_models import PRIORITY_RANK, Campaign, CampaignPriority, QueueItem, QueueStatus, Subscriber
from core.errors import NoRecipients, UnresolvableTargeting
from services.segments import SegmentEvaluator, tag_clause

logger = logging.getLogger(__name__)

UPSERT_DIALECTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


def _as_uuid_list(values: Any, key: str) -> List[uuid.UUID]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise UnresolvableTargeting(f"Targeting '{key}' must be a list")
    try:
        return [value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)) for value in values]
    except ValueError:
        raise UnresolvableTargeting(f"Targeting '{key}' contains an invalid id")


@dataclass
class TargetingRule:
    """Parsed campaign targeting"""
    segment_ids: List[uuid.UUID] = field(default_factory=list)
    exclude_segment_ids: List[uuid.UUID] = field(default_factory=list)
    include_subscriber_ids: List[uuid.UUID] = field(default_factory=list)
    exclude_subscriber_ids: List[uuid.UUID] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @classmethod
    def parse(cls, targeting: Optional[Dict[str, Any]]) -> 'TargetingRule':
        if targeting is None:
            targeting = {}
        if not isinstance(targeting, dict):
            raise UnresolvableTargeting("Targeting rule must be an object")

        tags = targeting.get('tags') or []
        if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
            raise UnresolvableTargeting("Targeting 'tags' must be a list of strings")

        return cls(
            segment_ids=_as_uuid_list(targeting.get('segment_ids'), 'segment_ids'),
            exclude_segment_ids=_as_uuid_list(targeting.get('exclude_segment_ids'), 'exclude_segment_ids'),
            include_subscriber_ids=_as_uuid_list(targeting.get('include_subscriber_ids'), 'include_subscriber_ids'),
            exclude_subscriber_ids=_as_uuid_list(targeting.get('exclude_subscriber_ids'), 'exclude_subscriber_ids'),
            tags=tags,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.segment_ids or self.include_subscriber_ids or self.tags)


@dataclass
class ResolutionResult:
    total: int
    created: int


class RecipientResolver:
    """
    Resolves targeting against the subscriber store

    Inclusion is the union of segment members, tag matches and explicit
    includes. Exclusions and the eligibility policy are applied after the
    union, so an excluded or suppressed subscriber never gets a QueueItem.
    """

    INSERT_CHUNK_SIZE = 500

    def __init__(self, config, segment_evaluator: SegmentEvaluator = None):
        self.config = config
        self.segments = segment_evaluator or SegmentEvaluator()

    def validate(self, session, campaign: Campaign) -> TargetingRule:
        """Check the rule can be resolved without touching the queue"""
        rule = TargetingRule.parse(campaign.targeting)
        if rule.is_empty:
            raise UnresolvableTargeting(f"Campaign {campaign.id} has an empty targeting rule")

        for segment in self.segments.load_segments(session, rule.segment_ids + rule.exclude_segment_ids):
            self.segments.validate(segment)
        return rule

    def eligibility_clause(self):
        conditions = [
            Subscriber.is_active.is_(True),
            Subscriber.deleted_at.is_(None),
            Subscriber.unsubscribed_at.is_(None),
            Subscriber.hard_bounced_at.is_(None),
            Subscriber.spam_complaint_at.is_(None),
        ]
        if self.config.REQUIRE_VERIFIED_SUBSCRIBERS:
            conditions.append(Subscriber.is_verified.is_(True))
        return and_(*conditions)

    def _selection(self, session, campaign: Campaign):
        rule = self.validate(session, campaign)

        included = [self.segments.member_clause(segment)
                    for segment in self.segments.load_segments(session, rule.segment_ids)]
        if rule.tags:
            included.append(tag_clause(rule.tags))
        if rule.include_subscriber_ids:
            included.append(Subscriber.id.in_(rule.include_subscriber_ids))

        conditions = [or_(*included), self.eligibility_clause()]
        for segment in self.segments.load_segments(session, rule.exclude_segment_ids):
            conditions.append(not_(self.segments.member_clause(segment)))
        if rule.exclude_subscriber_ids:
            conditions.append(Subscriber.id.notin_(rule.exclude_subscriber_ids))
        return and_(*conditions)

    def resolve(self, session, campaign: Campaign) -> set:
        """Current recipient ids for the campaign"""
        clause = self._selection(session, campaign)
        recipients = set(session.execute(select(Subscriber.id).where(clause)).scalars().all())
        logger.info(f"Resolved {len(recipients)} recipients for campaign {campaign.id}")
        return recipients

    def materialize(self, session, campaign: Campaign) -> ResolutionResult:
        """
        Resolve and upsert one QueueItem per recipient

        Safe to re-run: existing (campaign, subscriber) pairs are left untouched.

        Raises:
            NoRecipients: the rule resolved to nobody, nothing was written
            UnresolvableTargeting: the rule references unknown or broken segments
        """
        clause = self._selection(session, campaign)
        subscribers = session.execute(select(Subscriber).where(clause)).scalars().all()
        if not subscribers:
            raise NoRecipients(f"Campaign {campaign.id} targeting matched no eligible subscribers")

        now = datetime.utcnow()
        max_attempts = campaign.max_attempts or self.config.DEFAULT_MAX_ATTEMPTS
        priority = PRIORITY_RANK.get(campaign.priority, PRIORITY_RANK[CampaignPriority.NORMAL.value])
        rows = [{
            'id': uuid.uuid4(),
            'campaign_id': campaign.id,
            'subscriber_id': subscriber.id,
            'email': subscriber.email,
            'merge_variables': subscriber.merge_variables(),
            'status': QueueStatus.PENDING.value,
            'attempt_count': 0,
            'max_attempts': max_attempts,
            'priority': priority,
            'next_attempt_at': now,
            'created_at': now,
            'updated_at': now,
        } for subscriber in subscribers]

        created = 0
        for start in range(0, len(rows), self.INSERT_CHUNK_SIZE):
            created += self._insert_missing(session, rows[start:start + self.INSERT_CHUNK_SIZE])

        logger.info(f"Materialized campaign {campaign.id}: {len(rows)} recipients, {created} new queue items")
        return ResolutionResult(total=len(rows), created=created)

    def _insert_missing(self, session, rows: List[Dict[str, Any]]) -> int:
        insert = UPSERT_DIALECTS.get(session.get_bind().dialect.name)
        if insert is not None:
            statement = insert(QueueItem).values(rows).on_conflict_do_nothing(
                index_elements=['campaign_id', 'subscriber_id']
            )
            return session.execute(statement).rowcount

        # Other backends: skip pairs that already exist
        campaign_id = rows[0]['campaign_id']
        existing = set(session.execute(
            select(QueueItem.subscriber_id).where(
                QueueItem.campaign_id == campaign_id,
                QueueItem.subscriber_id.in_([row['subscriber_id'] for row in rows]),
            )
        ).scalars().all())
        missing = [row for row in rows if row['subscriber_id'] not in existing]
        session.add_all([QueueItem(**row) for row in missing])
        session.flush()
        return len(missing)
