import json
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app import create_app
from config.settings import ProductionConfig, TestingConfig
from core.database_models import CampaignStatus, DeliveryEvent, QueueItem, QueueStatus, Subscriber
from core.tracking import TrackingSigner
from middleware.security import compute_signature

WEBHOOK_SECRET = 'whsec-test'
OPERATOR_KEY = 'operator-test-key'


class ApiTestingConfig(TestingConfig):
    WEBHOOK_SECRET = WEBHOOK_SECRET
    OPERATOR_API_KEY = OPERATOR_KEY


class UnconfiguredProductionConfig(ProductionConfig):
    DATABASE_URL = 'sqlite://'
    REDIS_URL = None
    LOG_FILE = None
    TRACKING_SECRET = None
    TRACKING_BASE_URL = None
    WEBHOOK_SECRET = None
    OPERATOR_API_KEY = None


@pytest.fixture
def app(session_factory, fake_cache):
    return create_app(ApiTestingConfig, session_factory=session_factory, cache=fake_cache)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def token():
    signer = TrackingSigner(TestingConfig.TRACKING_SECRET)
    return signer.make_token


def _events(session_factory, item_id):
    session = session_factory()
    try:
        return session.execute(
            select(DeliveryEvent).where(DeliveryEvent.queue_item_id == item_id)
        ).scalars().all()
    finally:
        session.close()


def _post_events(client, payload, secret=WEBHOOK_SECRET):
    body = json.dumps(payload).encode('utf-8')
    headers = {}
    if secret:
        headers['X-Webhook-Signature'] = f"sha256={compute_signature(secret, body)}"
    return client.post('/api/webhooks/events', data=body, content_type='application/json', headers=headers)


def _operator(client, method, path, **kwargs):
    headers = kwargs.pop('headers', {})
    headers.setdefault('X-API-Key', OPERATOR_KEY)
    return getattr(client, method)(path, headers=headers, **kwargs)


class TestWebhooks:
    def test_unsigned_request_rejected(self, client, factory):
        item = factory.sent_item()

        response = _post_events(client, {'provider_message_id': item.provider_message_id,
                                          'event_type': 'delivered'}, secret=None)

        assert response.status_code == 401

    def test_wrong_signature_rejected(self, client, factory):
        item = factory.sent_item()

        response = _post_events(client, {'provider_message_id': item.provider_message_id,
                                          'event_type': 'delivered'}, secret='not-the-secret')

        assert response.status_code == 401

    def test_batch_counts(self, client, factory, session_factory, load):
        item = factory.sent_item()
        delivered = {
            'provider_message_id': item.provider_message_id,
            'event_type': 'delivered',
            'timestamp': '2024-03-01T12:00:00Z',
            'metadata': {'event_id': 'evt-100'},
        }
        payload = {'events': [
            delivered,
            delivered,
            {'provider_message_id': '<stranger@test.local>', 'event_type': 'open'},
            {'event_type': 'open'},
        ]}

        response = _post_events(client, payload)

        assert response.status_code == 200
        assert response.get_json() == {'recorded': 1, 'duplicate': 1, 'dropped': 2}
        assert len(_events(session_factory, item.id)) == 1
        assert load(QueueItem, item.id).status == QueueStatus.DELIVERED.value

    def test_single_event_body(self, client, factory):
        item = factory.sent_item()

        response = _post_events(client, {'provider_message_id': item.provider_message_id,
                                          'event_type': 'bounce', 'metadata': {'bounce_type': 'hard'}})

        assert response.get_json()['recorded'] == 1

    def test_non_json_body(self, client):
        body = b'not json'
        response = client.post('/api/webhooks/events', data=body, content_type='text/plain',
                               headers={'X-Webhook-Signature': compute_signature(WEBHOOK_SECRET, body)})

        assert response.status_code == 400


class TestTracking:
    def test_open_pixel_records_event(self, client, factory, session_factory, token, fake_cache):
        item = factory.sent_item()

        response = client.get(f"/t/o/{token(item.id)}", headers={'User-Agent': 'Mail/1.0'})

        assert response.status_code == 200
        assert response.mimetype == 'image/gif'
        assert 'no-store' in response.headers['Cache-Control']
        events = _events(session_factory, item.id)
        assert [event.event_type for event in events] == ['open']
        assert events[0].user_agent == 'Mail/1.0'
        assert f"analytics:campaign:{item.campaign_id}" in fake_cache.deleted

    def test_open_pixel_served_for_bad_token(self, client):
        response = client.get('/t/o/forged.token')

        assert response.status_code == 200
        assert response.mimetype == 'image/gif'

    def test_click_redirects(self, client, factory, session_factory, token):
        item = factory.sent_item()
        click_token = token(item.id, bound='https://example.com/offer')

        response = client.get(f"/t/c/{click_token}", query_string={'u': 'https://example.com/offer'})

        assert response.status_code == 302
        assert response.headers['Location'] == 'https://example.com/offer'
        events = _events(session_factory, item.id)
        assert events[0].event_type == 'click'
        assert events[0].url == 'https://example.com/offer'

    def test_click_with_forged_token_does_not_redirect(self, client):
        response = client.get('/t/c/forged.token', query_string={'u': 'https://evil.example.com'})

        assert response.status_code == 404

    def test_click_target_must_match_token(self, client, factory, session_factory, token):
        item = factory.sent_item()
        click_token = token(item.id, bound='https://example.com/offer')

        response = client.get(f"/t/c/{click_token}", query_string={'u': 'https://evil.example.com'})

        assert response.status_code == 404
        assert 'Location' not in response.headers
        assert _events(session_factory, item.id) == []

    def test_click_rejects_non_http_target(self, client, factory, token):
        item = factory.sent_item()

        response = client.get(f"/t/c/{token(item.id)}", query_string={'u': 'javascript:alert(1)'})

        assert response.status_code == 400

    def test_unsubscribe_page(self, client, factory, token, load):
        item = factory.sent_item()

        response = client.get(f"/t/u/{token(item.id)}")

        assert response.status_code == 200
        assert item.email in response.get_data(as_text=True)
        assert load(Subscriber, item.subscriber_id).unsubscribed_at is None

    def test_one_click_unsubscribe_is_idempotent(self, client, factory, session_factory, token, load):
        item = factory.sent_item()
        path = f"/t/u/{token(item.id)}"

        first = client.post(path, data={'List-Unsubscribe': 'One-Click'})
        second = client.post(path, data={'List-Unsubscribe': 'One-Click'})

        assert first.get_json() == {'status': 'unsubscribed', 'result': 'recorded'}
        assert second.get_json() == {'status': 'unsubscribed', 'result': 'duplicate'}
        assert load(Subscriber, item.subscriber_id).unsubscribed_at is not None
        assert len(_events(session_factory, item.id)) == 1

    def test_form_unsubscribe(self, client, factory, token, load):
        item = factory.sent_item()

        response = client.post(f"/t/u/{token(item.id)}", data={'reason': 'not relevant'})

        assert 'unsubscribed' in response.get_data(as_text=True)
        assert load(Subscriber, item.subscriber_id).unsubscribe_reason == 'not relevant'


class TestOperatorApi:
    def test_api_key_required(self, client, factory):
        campaign = factory.campaign()

        response = client.get(f"/api/campaigns/{campaign.id}/status")

        assert response.status_code == 401

    def test_invalid_transition_is_conflict(self, client, factory):
        campaign = factory.campaign()

        response = _operator(client, 'post', f"/api/campaigns/{campaign.id}/pause")

        assert response.status_code == 409
        assert response.get_json()['current_status'] == CampaignStatus.DRAFT.value

    def test_schedule_and_status(self, client, factory):
        subscriber = factory.subscriber()
        campaign = factory.campaign(targeting={'include_subscriber_ids': [str(subscriber.id)]})
        send_at = (datetime.utcnow() + timedelta(hours=2)).replace(microsecond=0)

        response = _operator(client, 'post', f"/api/campaigns/{campaign.id}/schedule",
                             json={'send_at': send_at.isoformat() + 'Z'})

        assert response.status_code == 200
        assert response.get_json()['status'] == CampaignStatus.SCHEDULED.value
        assert response.get_json()['scheduled_at'] == send_at.isoformat()

        status = _operator(client, 'get', f"/api/campaigns/{campaign.id}/status").get_json()
        assert status['status'] == CampaignStatus.SCHEDULED.value
        assert status['queue'][QueueStatus.PENDING.value] == 0

    def test_schedule_requires_timestamp(self, client, factory):
        campaign = factory.campaign()

        response = _operator(client, 'post', f"/api/campaigns/{campaign.id}/schedule", json={'send_at': 'soon'})

        assert response.status_code == 400

    def test_start_with_nobody_to_send_to(self, client, factory):
        gone = factory.subscriber(unsubscribed_at=datetime.utcnow())
        campaign = factory.campaign(
            targeting={'include_subscriber_ids': [str(gone.id)]},
            status=CampaignStatus.SCHEDULED.value,
            scheduled_at=datetime.utcnow(),
        )

        response = _operator(client, 'post', f"/api/campaigns/{campaign.id}/start")

        assert response.status_code == 422
        status = _operator(client, 'get', f"/api/campaigns/{campaign.id}/status").get_json()
        assert status['status'] == CampaignStatus.FAILED.value

    def test_start_reports_queue_size(self, client, factory):
        subscribers = [factory.subscriber(), factory.subscriber()]
        campaign = factory.campaign(
            targeting={'include_subscriber_ids': [str(s.id) for s in subscribers]},
            status=CampaignStatus.SCHEDULED.value,
            scheduled_at=datetime.utcnow(),
        )

        body = _operator(client, 'post', f"/api/campaigns/{campaign.id}/start").get_json()

        assert body['status'] == CampaignStatus.SENDING.value
        assert body['recipients'] == 2
        assert body['queued'] == 2

    def test_unknown_campaign(self, client):
        assert _operator(client, 'get', f"/api/campaigns/{uuid.uuid4()}/status").status_code == 404
        assert _operator(client, 'get', '/api/campaigns/not-a-uuid/status').status_code == 404


class TestStatisticsApi:
    def test_statistics_with_cache_header(self, client, factory):
        campaign = factory.campaign(status=CampaignStatus.SENDING.value)
        factory.sent_item(campaign)

        response = client.get(f"/api/analytics/campaigns/{campaign.id}/statistics")

        assert response.status_code == 200
        assert response.headers['Cache-Control'] == 'private, max-age=60'
        body = response.get_json()
        assert body['statistics']['total_recipients'] == 1
        assert body['campaign']['id'] == str(campaign.id)

    def test_unknown_campaign(self, client):
        response = client.get(f"/api/analytics/campaigns/{uuid.uuid4()}/statistics")

        assert response.status_code == 404


class TestHealth:
    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'
        assert response.headers['X-Frame-Options'] == 'DENY'

    def test_detailed_health(self, client):
        body = client.get('/health/detailed').get_json()

        assert body['components'] == {'database': 'healthy', 'redis': 'healthy'}


class TestUnconfiguredSecrets:
    @pytest.fixture
    def client(self, session_factory, fake_cache):
        app = create_app(UnconfiguredProductionConfig, session_factory=session_factory, cache=fake_cache)
        return app.test_client()

    def test_webhooks_refused(self, client, factory, session_factory):
        item = factory.sent_item()

        response = _post_events(client, {'provider_message_id': item.provider_message_id,
                                          'event_type': 'delivered'}, secret=None)

        assert response.status_code == 503
        assert _events(session_factory, item.id) == []

    def test_operator_api_refused(self, client, factory):
        campaign = factory.campaign()

        response = client.get(f"/api/campaigns/{campaign.id}/status", headers={'X-API-Key': ''})

        assert response.status_code == 503

    def test_testing_app_stays_open(self, session_factory, fake_cache, factory):
        client = create_app(TestingConfig, session_factory=session_factory, cache=fake_cache).test_client()
        campaign = factory.campaign()

        response = client.get(f"/api/campaigns/{campaign.id}/status")

        assert response.status_code == 200
