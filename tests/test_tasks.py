from datetime import datetime, timedelta

import pytest

from core.database_models import Campaign, CampaignStatus
from tasks import email_sender


@pytest.fixture
def queued(monkeypatch):
    """Capture .delay() calls instead of publishing to the broker"""
    calls = []
    for task in (email_sender.dispatch_batch, email_sender.recompute_statistics):
        monkeypatch.setattr(task, 'delay', lambda *args, _name=task.name: calls.append((_name, args)))
    return calls


@pytest.fixture(autouse=True)
def wired(monkeypatch, session_factory, config, worker):
    monkeypatch.setattr(email_sender, 'config', config)
    monkeypatch.setattr(email_sender, 'get_session_factory', lambda: session_factory)
    monkeypatch.setattr(email_sender, 'build_dispatch_worker', lambda session_factory=None: worker)


def test_beat_schedule_registered():
    schedule = email_sender.celery_app.conf.beat_schedule

    assert schedule['start-due-campaigns']['task'] == 'tasks.email_sender.start_due_campaigns'
    assert schedule['drain-send-queue']['task'] == 'tasks.email_sender.dispatch_batch'
    assert email_sender.celery_app.conf.task_acks_late


def test_start_due_campaigns_kicks_off_dispatch(factory, queued, load):
    subscriber = factory.subscriber()
    campaign = factory.campaign(
        targeting={'include_subscriber_ids': [str(subscriber.id)]},
        status=CampaignStatus.SCHEDULED.value,
        scheduled_at=datetime.utcnow() - timedelta(seconds=5),
    )

    result = email_sender.start_due_campaigns()

    assert result == {'started': [str(campaign.id)]}
    assert queued == [('tasks.email_sender.dispatch_batch', (str(campaign.id),))]
    assert load(Campaign, campaign.id).status == CampaignStatus.SENDING.value


def test_dispatch_batch_completes_and_requests_statistics(factory, queued, fake_transport):
    subscriber = factory.subscriber()
    campaign, _ = factory.sending_campaign([subscriber])

    result = email_sender.dispatch_batch(str(campaign.id))

    assert result['sent'] == 1
    assert result['campaigns_completed'] == [str(campaign.id)]
    assert len(fake_transport.sent) == 1
    assert queued == [('tasks.email_sender.recompute_statistics', (str(campaign.id),))]


def test_full_batch_is_re_enqueued(factory, queued, config, monkeypatch):
    class SmallBatches(config):
        DISPATCH_BATCH_SIZE = 1

    monkeypatch.setattr(email_sender, 'config', SmallBatches)
    subscribers = [factory.subscriber(), factory.subscriber()]
    factory.sending_campaign(subscribers)

    email_sender.dispatch_batch()

    assert ('tasks.email_sender.dispatch_batch', (None,)) in queued


def test_recompute_statistics(factory):
    campaign = factory.campaign(status=CampaignStatus.SENDING.value)
    factory.sent_item(campaign)

    assert email_sender.recompute_statistics(str(campaign.id)) == {'recomputed': [str(campaign.id)]}
    assert email_sender.recompute_statistics() == {'recomputed': [str(campaign.id)]}


def test_recompute_statistics_unknown_campaign():
    assert email_sender.recompute_statistics('00000000-0000-0000-0000-000000000000') == {'recomputed': []}


def test_decay_engagement_scores(factory):
    factory.subscriber(engagement_score=40, last_engagement_at=datetime.utcnow() - timedelta(days=200))

    assert email_sender.decay_engagement_scores() == {'updated': 1}
