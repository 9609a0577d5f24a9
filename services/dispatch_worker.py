# services/dispatch_worker.py
"""
Dispatch Worker
Claims queue items, renders them, hands them to the transport and records
the outcome. Any number of workers may run against the same database.
"""

import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import formataddr
from typing import Any, Dict, Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.orm import selectinload

from core.database_models import Campaign, QueueItem, QueueStatus
from core.errors import TemplateRenderingError
from core.template_engine import RenderedMessage, SecureTemplateEngine, TrackingLinks
from core.tracking import TrackingUrlBuilder
from core.transport import Transport
from services.campaign_lifecycle import CampaignLifecycle
from services.send_queue import SendQueue

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class BatchResult:
    """Per-batch outcome counters"""
    claimed: int = 0
    sent: int = 0
    already_sent: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0  # outcomes dropped because the lease was lost
    campaigns_completed: list = field(default_factory=list)

    def merge(self, other: 'BatchResult') -> 'BatchResult':
        self.claimed += other.claimed
        self.sent += other.sent
        self.already_sent += other.already_sent
        self.retried += other.retried
        self.failed += other.failed
        self.discarded += other.discarded
        self.campaigns_completed.extend(other.campaigns_completed)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'claimed': self.claimed,
            'sent': self.sent,
            'already_sent': self.already_sent,
            'retried': self.retried,
            'failed': self.failed,
            'discarded': self.discarded,
            'campaigns_completed': [str(campaign_id) for campaign_id in self.campaigns_completed],
        }


class DispatchWorker:
    """
    One dispatch loop

    A failure on one item is recorded on that item and never aborts the
    batch. An item that already carries a provider message id was accepted
    by the transport before a crash and is finalized without resending.
    """

    def __init__(self, session_factory, transport: Transport, template_engine: SecureTemplateEngine,
                 config, worker_id: str = None, tracking: Optional[TrackingUrlBuilder] = None,
                 queue: SendQueue = None, lifecycle: CampaignLifecycle = None):
        self.session_factory = session_factory
        self.transport = transport
        self.template_engine = template_engine
        self.config = config
        self.worker_id = worker_id or default_worker_id()
        self.tracking = tracking
        self.queue = queue or SendQueue(config)
        self.lifecycle = lifecycle or CampaignLifecycle(session_factory, config, queue=self.queue)

    def run_once(self, campaign_id=None, now: datetime = None) -> BatchResult:
        result = BatchResult()
        touched = set()
        campaigns: Dict[Any, Campaign] = {}

        session = self.session_factory()
        try:
            items = self.queue.claim_batch(session, self.worker_id, campaign_id=campaign_id, now=now)
            result.claimed = len(items)

            for item in items:
                touched.add(item.campaign_id)
                try:
                    self._process_item(session, item, campaigns, result)
                except Exception as e:
                    session.rollback()
                    logger.error(f"Unexpected error dispatching queue item {item.id}: {e}", exc_info=True)
                    applied = self.queue.mark_transient_failure(session, item, self.worker_id,
                                                                f"Unexpected error: {e}", category='unexpected')
                    self._record(session, result, self._retry_counter(item), applied)
        finally:
            session.close()

        for touched_id in touched:
            if self.lifecycle.complete_if_drained(touched_id):
                result.campaigns_completed.append(touched_id)

        if result.claimed:
            logger.info(f"Worker {self.worker_id} batch done: {result.to_dict()}")
        return result

    def run_until_empty(self, campaign_id=None, max_batches: int = 1000) -> BatchResult:
        """Drain claimable work, stopping when a batch comes back empty"""
        total = BatchResult()
        for _ in range(max_batches):
            batch = self.run_once(campaign_id=campaign_id)
            total.merge(batch)
            if batch.claimed == 0:
                break
        return total

    def _record(self, session, result: BatchResult, counter: str, applied: bool) -> None:
        session.commit()
        if applied:
            setattr(result, counter, getattr(result, counter) + 1)
        else:
            result.discarded += 1

    def _process_item(self, session, item: QueueItem, campaigns: Dict[Any, Campaign],
                      result: BatchResult) -> None:
        if item.provider_message_id:
            self._record(session, result, 'already_sent',
                         self.queue.mark_already_sent(session, item, self.worker_id))
            return

        try:
            validate_email(item.email, check_deliverability=False)
        except EmailNotValidError as e:
            self._record(session, result, 'failed',
                         self.queue.mark_permanent_failure(session, item, self.worker_id, str(e),
                                                           category='invalid_address'))
            return

        campaign = campaigns.get(item.campaign_id)
        if campaign is None:
            campaign = session.get(Campaign, item.campaign_id,
                                   options=[selectinload(Campaign.newsletter), selectinload(Campaign.template)])
            campaigns[item.campaign_id] = campaign

        try:
            message = self.render(campaign, item)
        except TemplateRenderingError as e:
            self._record(session, result, 'failed',
                         self.queue.mark_permanent_failure(session, item, self.worker_id, str(e),
                                                           category='render_error'))
            return

        send_result = self.transport.send(
            to=item.email,
            subject=message.subject,
            html=message.html,
            text=message.text,
            headers=self._headers(campaign, item),
        )

        if send_result.accepted:
            # Persist the message id first so a crash before mark_sent never resends
            if not self.queue.record_submission(session, item, self.worker_id, send_result.provider_message_id):
                self._record(session, result, 'sent', False)
                return
            session.commit()
            self._record(session, result, 'sent',
                         self.queue.mark_sent(session, item, self.worker_id, send_result.provider_message_id))
        elif send_result.permanent:
            self._record(session, result, 'failed',
                         self.queue.mark_permanent_failure(session, item, self.worker_id, send_result.error,
                                                           category=send_result.category or 'permanent'))
        else:
            applied = self.queue.mark_transient_failure(session, item, self.worker_id, send_result.error,
                                                        category=send_result.category or 'transient')
            self._record(session, result, self._retry_counter(item), applied)

    @staticmethod
    def _retry_counter(item: QueueItem) -> str:
        """Counter for a transient failure: the last allowed attempt fails the item"""
        return 'failed' if item.status == QueueStatus.FAILED.value else 'retried'

    def render(self, campaign: Campaign, item: QueueItem) -> RenderedMessage:
        if campaign.template is not None:
            html_template = campaign.template.html_content
            text_template = campaign.template.text_content
        else:
            html_template = campaign.html_content
            text_template = campaign.text_content

        return self.template_engine.render(
            subject_template=campaign.subject,
            html_template=html_template,
            text_template=text_template,
            variables=item.merge_variables or {},
            tracking=self._tracking_links(campaign, item),
        )

    def _tracking_links(self, campaign: Campaign, item: QueueItem) -> Optional[TrackingLinks]:
        if self.tracking is None:
            return None
        links = TrackingLinks(unsubscribe_url=self.tracking.unsubscribe_url(item.id))
        if campaign.tracking_enabled:
            links.open_url = self.tracking.open_url(item.id)
            links.click_url = lambda target: self.tracking.click_url(item.id, target)
        return links

    def _headers(self, campaign: Campaign, item: QueueItem) -> Dict[str, str]:
        newsletter = campaign.newsletter
        headers = {
            'From': formataddr((newsletter.from_name, newsletter.from_email)) if newsletter.from_name
            else newsletter.from_email,
            'X-Campaign-ID': str(campaign.id),
            'X-Queue-Item-ID': str(item.id),
        }
        if newsletter.reply_to:
            headers['Reply-To'] = newsletter.reply_to
        if self.tracking is not None:
            headers['List-Unsubscribe'] = f"<{self.tracking.unsubscribe_url(item.id)}>"
            headers['List-Unsubscribe-Post'] = 'List-Unsubscribe=One-Click'
        return headers
