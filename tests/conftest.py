import random
import uuid
from datetime import datetime, timedelta

import pytest

from config.settings import TestingConfig
from core.database import create_db_engine, create_session_factory, init_schema
from core.database_models import (
    Campaign, CampaignStatus, Newsletter, QueueItem, QueueStatus, Segment, SegmentKind, SegmentMember,
    Subscriber, SubscriberTag
)
from core.template_engine import SecureTemplateEngine
from core.tracking import TrackingSigner, TrackingUrlBuilder
from core.transport import SendResult, Transport
from services.campaign_lifecycle import CampaignLifecycle
from services.dispatch_worker import DispatchWorker
from services.send_queue import SendQueue


class FakeTransport(Transport):
    """Accepts everything unless told otherwise per recipient address"""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.sent = []

    def send(self, to, subject, html, text, headers=None):
        self.sent.append({'to': to, 'subject': subject, 'html': html, 'text': text, 'headers': headers or {}})
        response = self.responses.get(to)
        if isinstance(response, Exception):
            raise response
        if response is not None:
            return response
        return SendResult.ok(f"<{uuid.uuid4()}@test.local>")


class FakeCache:
    """Dict-backed stand-in for the redis client methods the aggregator uses"""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.deleted = []

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.deleted.append(key)
        self.store.pop(key, None)

    def ping(self):
        return True


class Factory:
    """Creates committed rows for tests"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _save(self, *objects):
        session = self.session_factory()
        try:
            session.add_all(objects)
            session.commit()
        finally:
            session.close()
        return objects[0] if len(objects) == 1 else objects

    def newsletter(self, **kwargs):
        kwargs.setdefault('name', 'Weekly Digest')
        kwargs.setdefault('from_name', 'Digest Team')
        kwargs.setdefault('from_email', 'digest@example.com')
        return self._save(Newsletter(**kwargs))

    def subscriber(self, email=None, tags=(), **kwargs):
        kwargs.setdefault('is_verified', True)
        kwargs.setdefault('first_name', 'Ada')
        subscriber = Subscriber(email=email or f"{uuid.uuid4().hex[:10]}@example.com", **kwargs)
        subscriber.tags = [SubscriberTag(tag=tag) for tag in tags]
        return self._save(subscriber)

    def static_segment(self, subscribers, name='Static'):
        segment = Segment(name=name, kind=SegmentKind.STATIC.value)
        segment.members = [SegmentMember(subscriber_id=subscriber.id) for subscriber in subscribers]
        return self._save(segment)

    def dynamic_segment(self, definition, name='Dynamic'):
        return self._save(Segment(name=name, kind=SegmentKind.DYNAMIC.value, filter_definition=definition))

    def campaign(self, newsletter=None, targeting=None, status=CampaignStatus.DRAFT.value, **kwargs):
        newsletter = newsletter or self.newsletter()
        kwargs.setdefault('name', 'Launch')
        kwargs.setdefault('subject', 'Hello {{ first_name }}')
        kwargs.setdefault('html_content', '<p>Hi {{ first_name }}</p><a href="https://example.com/offer">Offer</a>')
        return self._save(Campaign(newsletter_id=newsletter.id, targeting=targeting or {}, status=status, **kwargs))

    def sending_campaign(self, subscribers, **kwargs):
        """Campaign in ``sending`` with one pending queue item per subscriber"""
        campaign = self.campaign(
            targeting={'include_subscriber_ids': [str(subscriber.id) for subscriber in subscribers]},
            status=CampaignStatus.SENDING.value,
            started_at=datetime.utcnow(),
            **kwargs
        )
        items = [self.queue_item(campaign, subscriber) for subscriber in subscribers]
        return campaign, items

    def queue_item(self, campaign, subscriber, **kwargs):
        kwargs.setdefault('status', QueueStatus.PENDING.value)
        kwargs.setdefault('max_attempts', campaign.max_attempts or 5)
        kwargs.setdefault('next_attempt_at', datetime.utcnow() - timedelta(seconds=1))
        return self._save(QueueItem(
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            email=subscriber.email,
            merge_variables=subscriber.merge_variables(),
            **kwargs
        ))

    def sent_item(self, campaign=None, subscriber=None, provider_message_id=None, **kwargs):
        """Queue item already accepted by the transport"""
        subscriber = subscriber or self.subscriber()
        campaign = campaign or self.campaign(status=CampaignStatus.SENDING.value)
        kwargs.setdefault('status', QueueStatus.SENT.value)
        kwargs.setdefault('attempt_count', 1)
        kwargs.setdefault('sent_at', datetime.utcnow())
        return self.queue_item(
            campaign, subscriber,
            provider_message_id=provider_message_id or f"<{uuid.uuid4()}@test.local>",
            **kwargs
        )


@pytest.fixture
def config():
    return TestingConfig


@pytest.fixture
def engine():
    engine = create_db_engine('sqlite://')
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def tracking(config):
    return TrackingUrlBuilder(config.TRACKING_BASE_URL, TrackingSigner(config.TRACKING_SECRET))


@pytest.fixture
def send_queue(config):
    return SendQueue(config, rng=random.Random(7))


@pytest.fixture
def lifecycle(session_factory, config, send_queue):
    return CampaignLifecycle(session_factory, config, queue=send_queue)


@pytest.fixture
def worker(session_factory, fake_transport, config, tracking, send_queue, lifecycle):
    return DispatchWorker(
        session_factory,
        transport=fake_transport,
        template_engine=SecureTemplateEngine(enable_css_inlining=False),
        config=config,
        worker_id='worker-1',
        tracking=tracking,
        queue=send_queue,
        lifecycle=lifecycle,
    )


@pytest.fixture
def load(session_factory):
    """Fetch a fresh copy of a row by model and id"""
    def _load(model, object_id):
        session = session_factory()
        try:
            return session.get(model, object_id)
        finally:
            session.close()
    return _load
