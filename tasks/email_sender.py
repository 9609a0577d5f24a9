# tasks/email_sender.py
"""
Celery tasks driving the delivery pipeline:
- starting scheduled campaigns when they come due
- draining the send queue with dispatch workers
- recomputing campaign statistics and subscriber engagement scores
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_prerun, task_postrun, task_failure
from celery.utils.log import get_task_logger

from config.settings import get_config
from core.database import create_db_engine, create_session_factory
from core.errors import CampaignNotFound
from core.template_engine import SecureTemplateEngine
from core.tracking import build_tracking_urls
from core.transport import SMTPTransport
from services.analytics import StatisticsAggregator
from services.campaign_lifecycle import CampaignLifecycle
from services.dispatch_worker import DispatchWorker

# Configure task logger
logger = get_task_logger(__name__)

config = get_config()

celery_app = Celery('newsletter_pipeline')
celery_app.conf.update({
    # Broker and Result Backend
    'broker_url': config.CELERY_BROKER_URL,
    'result_backend': config.CELERY_RESULT_BACKEND,

    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,

    # Result settings
    'result_expires': 3600,  # 1 hour

    # Routing
    'task_routes': {
        'tasks.email_sender.dispatch_batch': {'queue': 'email_sending'},
        'tasks.email_sender.start_due_campaigns': {'queue': 'campaign_management'},
        'tasks.email_sender.recompute_statistics': {'queue': 'analytics'},
        'tasks.email_sender.decay_engagement_scores': {'queue': 'analytics'},
    },

    # Periodic work
    'beat_schedule': {
        'start-due-campaigns': {
            'task': 'tasks.email_sender.start_due_campaigns',
            'schedule': timedelta(seconds=60),
        },
        'drain-send-queue': {
            'task': 'tasks.email_sender.dispatch_batch',
            'schedule': timedelta(seconds=30),
        },
        'recompute-statistics': {
            'task': 'tasks.email_sender.recompute_statistics',
            'schedule': timedelta(seconds=config.STATS_POLL_INTERVAL),
        },
        'decay-engagement-scores': {
            'task': 'tasks.email_sender.decay_engagement_scores',
            'schedule': crontab(hour=3, minute=0),
        },
    },

    # Monitoring
    'worker_send_task_events': True,
    'task_send_sent_event': True,
    'worker_hijack_root_logger': False,
    'worker_log_color': False,  # Better for systemd journal
})

_session_factory = None


def get_session_factory():
    """Process-wide session factory, created on first use in each worker"""
    global _session_factory
    if _session_factory is None:
        engine = create_db_engine(
            config.DATABASE_URL,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            slow_query_threshold=config.SLOW_QUERY_THRESHOLD,
        )
        _session_factory = create_session_factory(engine)
    return _session_factory


def build_dispatch_worker(session_factory=None) -> DispatchWorker:
    session_factory = session_factory or get_session_factory()
    transport = SMTPTransport.from_config(config, from_address=config.DEFAULT_FROM_ADDRESS)
    return DispatchWorker(
        session_factory,
        transport=transport,
        template_engine=SecureTemplateEngine(enable_css_inlining=config.CSS_INLINING),
        config=config,
        tracking=build_tracking_urls(config),
    )


@celery_app.task(bind=True)
def start_due_campaigns(self) -> Dict[str, Any]:
    """Move due scheduled campaigns into sending and kick off dispatch"""
    lifecycle = CampaignLifecycle(get_session_factory(), config)
    started = lifecycle.start_due_campaigns()

    for campaign_id in started:
        dispatch_batch.delay(str(campaign_id))

    if started:
        logger.info(f"Started {len(started)} due campaigns")
    return {'started': [str(campaign_id) for campaign_id in started]}


@celery_app.task(bind=True)
def dispatch_batch(self, campaign_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Run one dispatch batch and re-enqueue while full batches keep coming

    Args:
        campaign_id: Restrict the batch to one campaign, or None for any
    """
    worker = build_dispatch_worker()
    try:
        result = worker.run_once(campaign_id=_as_uuid(campaign_id))
    finally:
        worker.transport.close()

    if result.claimed >= config.DISPATCH_BATCH_SIZE:
        dispatch_batch.delay(campaign_id)
    for completed in result.campaigns_completed:
        recompute_statistics.delay(str(completed))
    return result.to_dict()


@celery_app.task(bind=True)
def recompute_statistics(self, campaign_id: Optional[str] = None) -> Dict[str, Any]:
    """Rebuild statistics for one campaign or for every active campaign"""
    aggregator = StatisticsAggregator(get_session_factory(), config)
    if campaign_id is None:
        campaign_ids = aggregator.recompute_all()
        return {'recomputed': [str(value) for value in campaign_ids]}

    try:
        aggregator.recompute_campaign(_as_uuid(campaign_id))
    except CampaignNotFound:
        logger.warning(f"Statistics requested for unknown campaign {campaign_id}")
        return {'recomputed': []}
    return {'recomputed': [campaign_id]}


@celery_app.task(bind=True)
def decay_engagement_scores(self) -> Dict[str, Any]:
    """Daily engagement score recalculation (inactivity penalties grow over time)"""
    aggregator = StatisticsAggregator(get_session_factory(), config)
    updated = aggregator.recompute_engagement_scores()
    return {'updated': updated}


def _as_uuid(value):
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **cwds):
    """Handle task pre-run events"""
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **cwds):
    """Handle task post-run events"""
    logger.info(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **cwds):
    """Handle task failure events"""
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
