# services/analytics.py
"""
Campaign Statistics Aggregator
Derives per-campaign delivery/engagement rollups and per-subscriber
engagement scores from queue items and delivery events.

Rollups are overwrite-in-place caches: they can always be rebuilt from the
underlying rows, so recomputation is safe to run at any time.
"""

import json
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import redis
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from core.database_models import (
    ACCEPTED_QUEUE_STATUSES, Campaign, CampaignStatistics, DeliveryEvent, EventType, QueueItem,
    QueueStatus, Subscriber
)
from core.errors import CampaignNotFound

# Configure logging
logger = logging.getLogger(__name__)

STATISTIC_FIELDS = (
    'total_recipients', 'total_pending', 'total_sent', 'total_delivered', 'total_bounced', 'total_failed',
    'total_opens', 'unique_opens', 'total_clicks', 'unique_clicks', 'total_unsubscribes', 'total_complaints',
    'open_rate', 'click_rate', 'bounce_rate', 'unsubscribe_rate', 'complaint_rate', 'click_to_open_rate',
)


@dataclass
class Metric:
    """Individual metric with benchmark comparison"""
    name: str
    value: float
    unit: str
    benchmark: Optional[float] = None
    status: str = "normal"  # "good", "warning", "critical"


def percentage(numerator: float, denominator: float) -> float:
    """Percent rounded to 2 dp, 0 for an empty denominator, never above 100"""
    if not denominator:
        return 0.0
    return round(min(100.0, max(0.0, numerator / denominator * 100)), 2)


def engagement_scores(opens: np.ndarray, clicks: np.ndarray, negatives: np.ndarray,
                      days_since_engagement: np.ndarray) -> np.ndarray:
    """
    Vectorized engagement score

    opens*5 + clicks*10 - (bounces + complaints)*20, minus 50 after 30 idle
    days or 100 after 90, clamped to 0..100. NaN idle days (never engaged)
    carry no inactivity penalty.
    """
    score = opens * 5 + clicks * 10 - negatives * 20
    idle = np.nan_to_num(days_since_engagement, nan=0.0)
    penalty = np.where(idle > 90, 100, np.where(idle > 30, 50, 0))
    return np.clip(score - penalty, 0, 100).astype(int)


class StatisticsAggregator:
    """
    Statistics engine with Redis-cached reporting
    """

    # Industry benchmark values for comparison
    INDUSTRY_BENCHMARKS = {
        'open_rate': 22.0,
        'click_rate': 3.0,
        'bounce_rate': 2.0,
        'unsubscribe_rate': 0.5,
        'complaint_rate': 0.1,
    }

    # Metric thresholds for status determination (lower is better)
    STATUS_THRESHOLDS = {
        'bounce_rate': {'good': 2.0, 'warning': 5.0},
        'unsubscribe_rate': {'good': 0.5, 'warning': 1.0},
        'complaint_rate': {'good': 0.1, 'warning': 0.3},
    }

    def __init__(self, session_factory, config, cache: Optional[Any] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory
            config: Pipeline configuration
            cache: Redis-like client; built from REDIS_URL when omitted
        """
        self.session_factory = session_factory
        self.cache_ttl = config.STATS_POLL_INTERVAL
        self.engagement_window = config.ENGAGEMENT_WINDOW

        if cache is None and config.REDIS_URL:
            cache = redis.Redis.from_url(config.REDIS_URL, decode_responses=True)
        self.cache = cache

    @staticmethod
    def cache_key(campaign_id) -> str:
        return f"analytics:campaign:{campaign_id}"

    # Campaign rollups

    def _load_frames(self, session, campaign_id):
        items_df = pd.DataFrame(
            session.execute(
                select(QueueItem.id, QueueItem.status).where(QueueItem.campaign_id == campaign_id)
            ).all(),
            columns=['queue_item_id', 'status'],
        )
        events_df = pd.DataFrame(
            session.execute(
                select(DeliveryEvent.subscriber_id, DeliveryEvent.event_type)
                .where(DeliveryEvent.campaign_id == campaign_id)
            ).all(),
            columns=['subscriber_id', 'event_type'],
        )
        return items_df, events_df

    def _calculate(self, items_df: pd.DataFrame, events_df: pd.DataFrame) -> Dict[str, Any]:
        status_counts = items_df['status'].value_counts()

        def status_total(*statuses) -> int:
            return int(sum(status_counts.get(status, 0) for status in statuses))

        def events_of(event_type: EventType) -> pd.DataFrame:
            return events_df[events_df['event_type'] == event_type.value]

        opens = events_of(EventType.OPEN)
        clicks = events_of(EventType.CLICK)

        values = {
            'total_recipients': int(len(items_df)),
            'total_pending': status_total(QueueStatus.PENDING.value, QueueStatus.PROCESSING.value),
            'total_sent': status_total(*ACCEPTED_QUEUE_STATUSES),
            'total_delivered': status_total(QueueStatus.DELIVERED.value),
            'total_bounced': status_total(QueueStatus.BOUNCED.value),
            'total_failed': status_total(QueueStatus.FAILED.value),
            'total_opens': int(len(opens)),
            'unique_opens': int(opens['subscriber_id'].nunique()),
            'total_clicks': int(len(clicks)),
            'unique_clicks': int(clicks['subscriber_id'].nunique()),
            # One unsubscribe or complaint per recipient is what counts
            'total_unsubscribes': int(events_of(EventType.UNSUBSCRIBE)['subscriber_id'].nunique()),
            'total_complaints': int(events_of(EventType.COMPLAINT)['subscriber_id'].nunique()),
        }

        delivered = values['total_delivered']
        values.update({
            'open_rate': percentage(values['unique_opens'], delivered),
            'click_rate': percentage(values['unique_clicks'], delivered),
            'bounce_rate': percentage(values['total_bounced'], values['total_sent']),
            'unsubscribe_rate': percentage(values['total_unsubscribes'], delivered),
            'complaint_rate': percentage(values['total_complaints'], delivered),
            'click_to_open_rate': percentage(values['unique_clicks'], values['unique_opens']),
        })
        return values

    def recompute_campaign(self, campaign_id, now: datetime = None) -> CampaignStatistics:
        """Rebuild and overwrite the rollup row for one campaign"""
        now = now or datetime.utcnow()
        start_time = time.time()

        session = self.session_factory()
        try:
            if session.get(Campaign, campaign_id) is None:
                raise CampaignNotFound(f"Campaign {campaign_id} not found")

            items_df, events_df = self._load_frames(session, campaign_id)
            values = self._calculate(items_df, events_df)
            values['last_calculated'] = now

            stats = session.execute(
                select(CampaignStatistics).where(CampaignStatistics.campaign_id == campaign_id)
            ).scalar_one_or_none()
            if stats is None:
                stats = CampaignStatistics(campaign_id=campaign_id)
                session.add(stats)
            for key, value in values.items():
                setattr(stats, key, value)

            try:
                session.commit()
            except IntegrityError:
                # Another aggregator created the row first; last write wins
                session.rollback()
                session.execute(
                    update(CampaignStatistics)
                    .where(CampaignStatistics.campaign_id == campaign_id)
                    .values(**values, updated_at=now)
                )
                session.commit()
                stats = session.execute(
                    select(CampaignStatistics).where(CampaignStatistics.campaign_id == campaign_id)
                ).scalar_one()

            logger.info(f"Statistics recomputed for campaign {campaign_id} in {time.time() - start_time:.2f}s")
        finally:
            session.close()

        self.invalidate(campaign_id)
        return stats

    def recompute_all(self, statuses=None) -> List[Any]:
        """Recompute rollups for campaigns that are still producing events"""
        statuses = statuses or ('sending', 'paused', 'sent')
        session = self.session_factory()
        try:
            campaign_ids = session.execute(
                select(Campaign.id).where(Campaign.status.in_(statuses), Campaign.deleted_at.is_(None))
            ).scalars().all()
        finally:
            session.close()

        for campaign_id in campaign_ids:
            self.recompute_campaign(campaign_id)
        return campaign_ids

    # Subscriber engagement

    def recompute_engagement_scores(self, now: datetime = None) -> int:
        """Recalculate engagement_score for every live subscriber, returns rows updated"""
        now = now or datetime.utcnow()
        window_start = now - self.engagement_window

        session = self.session_factory()
        try:
            subscribers_df = pd.DataFrame(
                session.execute(
                    select(Subscriber.id, Subscriber.engagement_score, Subscriber.last_engagement_at)
                    .where(Subscriber.deleted_at.is_(None))
                ).all(),
                columns=['subscriber_id', 'engagement_score', 'last_engagement_at'],
            )
            if subscribers_df.empty:
                return 0

            events_df = pd.DataFrame(
                session.execute(
                    select(DeliveryEvent.subscriber_id, DeliveryEvent.event_type, DeliveryEvent.occurred_at)
                    .where(DeliveryEvent.event_type.in_([
                        EventType.OPEN.value, EventType.CLICK.value,
                        EventType.BOUNCE.value, EventType.COMPLAINT.value,
                    ]))
                ).all(),
                columns=['subscriber_id', 'event_type', 'occurred_at'],
            )

            frame = subscribers_df.set_index('subscriber_id')
            recent = events_df[pd.to_datetime(events_df['occurred_at']) >= pd.Timestamp(window_start)]

            def counts_per_subscriber(events: pd.DataFrame, *event_types) -> pd.Series:
                matching = events[events['event_type'].isin(list(event_types))]
                return matching.groupby('subscriber_id').size().reindex(frame.index, fill_value=0)

            opens = counts_per_subscriber(recent, EventType.OPEN.value)
            clicks = counts_per_subscriber(recent, EventType.CLICK.value)
            negative_counts = counts_per_subscriber(events_df, EventType.BOUNCE.value, EventType.COMPLAINT.value)
            idle_days = (pd.Timestamp(now) - pd.to_datetime(frame['last_engagement_at'])).dt.days.astype(float)

            frame['new_score'] = engagement_scores(
                opens.to_numpy(dtype=float),
                clicks.to_numpy(dtype=float),
                negative_counts.to_numpy(dtype=float),
                idle_days.to_numpy(dtype=float),
            )

            changed = frame[frame['new_score'] != frame['engagement_score']]
            for subscriber_id, new_score in changed['new_score'].items():
                session.execute(
                    update(Subscriber).where(Subscriber.id == subscriber_id).values(engagement_score=int(new_score))
                )
            session.commit()
            logger.info(f"Engagement scores updated for {len(changed)} of {len(frame)} subscribers")
            return int(len(changed))
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Reporting

    def _get_metric_status(self, metric_name: str, value: float) -> str:
        thresholds = self.STATUS_THRESHOLDS.get(metric_name)
        if not thresholds:
            return 'normal'
        if value <= thresholds['good']:
            return 'good'
        if value <= thresholds['warning']:
            return 'warning'
        return 'critical'

    def _build_metrics(self, stats: CampaignStatistics) -> Dict[str, Dict[str, Any]]:
        metrics = {}
        for key, label in (('open_rate', 'Open Rate'), ('click_rate', 'Click Rate'),
                           ('bounce_rate', 'Bounce Rate'), ('unsubscribe_rate', 'Unsubscribe Rate'),
                           ('complaint_rate', 'Complaint Rate'), ('click_to_open_rate', 'Click-to-Open Rate')):
            value = getattr(stats, key) or 0.0
            metrics[key] = asdict(Metric(
                name=label,
                value=value,
                unit='%',
                benchmark=self.INDUSTRY_BENCHMARKS.get(key),
                status=self._get_metric_status(key, value),
            ))
        return metrics

    def get_campaign_report(self, campaign_id, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Pull-based campaign report with caching

        Stored rollups older than the polling interval are recomputed before
        being returned.
        """
        cache_key = self.cache_key(campaign_id)

        if not force_refresh and self.cache is not None:
            try:
                cached_data = self.cache.get(cache_key)
                if cached_data:
                    logger.debug(f"Returning cached statistics for {campaign_id}")
                    return json.loads(cached_data)
            except redis.RedisError as e:
                logger.warning(f"Statistics cache read failed: {str(e)}")

        session = self.session_factory()
        try:
            campaign = session.get(Campaign, campaign_id)
            if campaign is None or campaign.deleted_at is not None:
                raise CampaignNotFound(f"Campaign {campaign_id} not found")
            campaign_info = {'id': str(campaign.id), 'name': campaign.name, 'status': campaign.status}
            stats = session.execute(
                select(CampaignStatistics).where(CampaignStatistics.campaign_id == campaign_id)
            ).scalar_one_or_none()
        finally:
            session.close()

        stale_before = datetime.utcnow() - timedelta(seconds=self.cache_ttl)
        if force_refresh or stats is None or stats.last_calculated is None or stats.last_calculated < stale_before:
            stats = self.recompute_campaign(campaign_id)

        report = {
            'campaign': campaign_info,
            'statistics': {field: getattr(stats, field) for field in STATISTIC_FIELDS},
            'metrics': self._build_metrics(stats),
            'last_calculated': stats.last_calculated.isoformat() if stats.last_calculated else None,
        }

        if self.cache is not None:
            try:
                self.cache.setex(cache_key, self.cache_ttl, json.dumps(report, default=str))
            except redis.RedisError as e:
                logger.warning(f"Failed to cache statistics: {str(e)}")
        return report

    def invalidate(self, campaign_id) -> None:
        if self.cache is None:
            return
        try:
            self.cache.delete(self.cache_key(campaign_id))
        except redis.RedisError as e:
            logger.warning(f"Statistics cache invalidation failed for {campaign_id}: {str(e)}")
