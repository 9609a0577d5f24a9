from datetime import datetime
from enum import Enum
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, Boolean, Float, ForeignKey,
    UniqueConstraint, Index, Uuid
)

from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class CampaignStatus(Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    PAUSED = "paused"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueStatus(Enum):
    """Per-recipient delivery status"""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


TERMINAL_QUEUE_STATUSES = (
    QueueStatus.SENT.value,
    QueueStatus.DELIVERED.value,
    QueueStatus.FAILED.value,
    QueueStatus.BOUNCED.value,
)

# Items the transport has accepted at some point
ACCEPTED_QUEUE_STATUSES = (
    QueueStatus.SENT.value,
    QueueStatus.DELIVERED.value,
    QueueStatus.BOUNCED.value,
)


class EventType(Enum):
    """Delivery provider and tracking event types"""
    DELIVERED = "delivered"
    OPEN = "open"
    CLICK = "click"
    BOUNCE = "bounce"
    COMPLAINT = "complaint"
    UNSUBSCRIBE = "unsubscribe"


class CampaignPriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Queue items carry the rank so claims can order on an indexed integer
PRIORITY_RANK = {
    CampaignPriority.LOW.value: 1,
    CampaignPriority.NORMAL.value: 2,
    CampaignPriority.HIGH.value: 3,
    CampaignPriority.URGENT.value: 4,
}


class SegmentKind(Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class Newsletter(Base):
    __tablename__ = 'newsletters'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    from_name = Column(String(255))
    from_email = Column(String(255), nullable=False)
    reply_to = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    campaigns = relationship("Campaign", back_populates="newsletter")


class Subscriber(Base):
    __tablename__ = 'subscribers'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    custom_fields = Column(JSON)  # Extra merge variables
    consent_given = Column(Boolean, default=True)
    consent_at = Column(DateTime, default=datetime.utcnow)
    consent_ip = Column(String(45))
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    unsubscribed_at = Column(DateTime)
    unsubscribe_reason = Column(Text)
    hard_bounced_at = Column(DateTime)
    bounce_count = Column(Integer, default=0, nullable=False)
    spam_complaint_at = Column(DateTime)
    engagement_score = Column(Integer, default=0, nullable=False)
    last_engagement_at = Column(DateTime)
    deleted_at = Column(DateTime)  # Soft delete only, rows are kept for audit
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tags = relationship("SubscriberTag", back_populates="subscriber", cascade="all, delete-orphan")

    def merge_variables(self) -> dict:
        """Variables exposed to campaign templates"""
        variables = dict(self.custom_fields or {})
        variables.update({
            'email': self.email,
            'first_name': self.first_name or '',
            'last_name': self.last_name or '',
        })
        return variables


class SubscriberTag(Base):
    __tablename__ = 'subscriber_tags'
    __table_args__ = (UniqueConstraint('subscriber_id', 'tag', name='uq_subscriber_tag'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(Uuid(as_uuid=True), ForeignKey('subscribers.id'), nullable=False, index=True)
    tag = Column(String(100), nullable=False, index=True)

    subscriber = relationship("Subscriber", back_populates="tags")


class Segment(Base):
    __tablename__ = 'segments'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False, default=SegmentKind.STATIC.value)
    filter_definition = Column(JSON)  # Predicate for dynamic segments
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("SegmentMember", back_populates="segment", cascade="all, delete-orphan")


class SegmentMember(Base):
    __tablename__ = 'segment_members'
    __table_args__ = (UniqueConstraint('segment_id', 'subscriber_id', name='uq_segment_member'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    segment_id = Column(Uuid(as_uuid=True), ForeignKey('segments.id'), nullable=False, index=True)
    subscriber_id = Column(Uuid(as_uuid=True), ForeignKey('subscribers.id'), nullable=False, index=True)

    segment = relationship("Segment", back_populates="members")


class EmailTemplate(Base):
    __tablename__ = 'email_templates'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    subject_template = Column(String(255))
    html_content = Column(Text, nullable=False)
    text_content = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    campaigns = relationship("Campaign", back_populates="template")


class Campaign(Base):
    __tablename__ = 'campaigns'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    newsletter_id = Column(Uuid(as_uuid=True), ForeignKey('newsletters.id'), nullable=False)
    template_id = Column(Uuid(as_uuid=True), ForeignKey('email_templates.id'))
    name = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    html_content = Column(Text)  # Used when no template is referenced
    text_content = Column(Text)
    targeting = Column(JSON)  # segment_ids, exclude_segment_ids, include/exclude_subscriber_ids, tags
    max_attempts = Column(Integer)
    priority = Column(String(20), default=CampaignPriority.NORMAL.value, nullable=False, index=True)
    tracking_enabled = Column(Boolean, default=True, nullable=False)
    status = Column(String(20), default=CampaignStatus.DRAFT.value, nullable=False, index=True)
    failure_reason = Column(Text)
    scheduled_at = Column(DateTime, index=True)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    deleted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    newsletter = relationship("Newsletter", back_populates="campaigns")
    template = relationship("EmailTemplate", back_populates="campaigns")
    queue_items = relationship("QueueItem", back_populates="campaign", cascade="all, delete-orphan")
    statistics = relationship("CampaignStatistics", back_populates="campaign", uselist=False,
                              cascade="all, delete-orphan")


class QueueItem(Base):
    __tablename__ = 'queue_items'
    __table_args__ = (
        UniqueConstraint('campaign_id', 'subscriber_id', name='uq_queue_campaign_subscriber'),
        Index('ix_queue_items_claimable', 'status', 'priority', 'next_attempt_at'),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id = Column(Uuid(as_uuid=True), ForeignKey('campaigns.id', ondelete='CASCADE'),
                         nullable=False, index=True)
    subscriber_id = Column(Uuid(as_uuid=True), ForeignKey('subscribers.id'), nullable=False, index=True)
    email = Column(String(255), nullable=False)  # Snapshot taken at resolve time
    merge_variables = Column(JSON)
    status = Column(String(20), default=QueueStatus.PENDING.value, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    priority = Column(Integer, default=PRIORITY_RANK[CampaignPriority.NORMAL.value], nullable=False)
    next_attempt_at = Column(DateTime, default=datetime.utcnow)
    claimed_by = Column(String(255))
    claimed_at = Column(DateTime)
    provider_message_id = Column(String(255), unique=True)
    last_error = Column(Text)
    error_category = Column(String(50))
    sent_at = Column(DateTime)
    delivered_at = Column(DateTime)
    bounced_at = Column(DateTime)
    bounce_type = Column(String(20))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    campaign = relationship("Campaign", back_populates="queue_items")
    subscriber = relationship("Subscriber")
    events = relationship("DeliveryEvent", back_populates="queue_item")

class DeliveryEvent(Base):
    __tablename__ = 'delivery_events'
    __table_args__ = (
        Index('ix_delivery_events_campaign_type', 'campaign_id', 'event_type'),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Events outlive queue cleanup, so the link is nulled rather than cascaded
    queue_item_id = Column(Uuid(as_uuid=True), ForeignKey('queue_items.id', ondelete='SET NULL'), index=True)
    campaign_id = Column(Uuid(as_uuid=True), nullable=False)
    subscriber_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    provider_message_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(20), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    idempotency_key = Column(String(128), nullable=False, unique=True)
    dedup_key = Column(String(64), nullable=False, index=True)
    is_first_occurrence = Column(Boolean, default=True, nullable=False)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    url = Column(Text)
    bounce_type = Column(String(20))
    payload = Column('metadata', JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    queue_item = relationship("QueueItem", back_populates="events")


class CampaignStatistics(Base):
    __tablename__ = 'campaign_statistics'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id = Column(Uuid(as_uuid=True), ForeignKey('campaigns.id', ondelete='CASCADE'),
                         nullable=False, unique=True)
    total_recipients = Column(Integer, default=0)
    total_pending = Column(Integer, default=0)
    total_sent = Column(Integer, default=0)
    total_delivered = Column(Integer, default=0)
    total_bounced = Column(Integer, default=0)
    total_failed = Column(Integer, default=0)
    total_opens = Column(Integer, default=0)
    unique_opens = Column(Integer, default=0)
    total_clicks = Column(Integer, default=0)
    unique_clicks = Column(Integer, default=0)
    total_unsubscribes = Column(Integer, default=0)
    total_complaints = Column(Integer, default=0)
    open_rate = Column(Float, default=0.0)
    click_rate = Column(Float, default=0.0)
    bounce_rate = Column(Float, default=0.0)
    unsubscribe_rate = Column(Float, default=0.0)
    complaint_rate = Column(Float, default=0.0)
    click_to_open_rate = Column(Float, default=0.0)
    last_calculated = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    campaign = relationship("Campaign", back_populates="statistics")


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    action = Column(String(100), nullable=False)
    details = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
