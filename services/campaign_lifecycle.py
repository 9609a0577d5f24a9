# services/campaign_lifecycle.py
"""
Campaign state machine

    draft -> scheduled -> sending -> sent
                  |          |  ^
                  v          v  |
              cancelled    paused
    scheduled -> failed (targeting resolved to nobody or could not be resolved)

Every transition is a conditional UPDATE on the observed status, so two
schedulers racing on the same campaign start it once. Each transition writes
an audit row in the same transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import select, update

from core.audit import record_audit_event
from core.database_models import Campaign, CampaignStatus
from core.errors import CampaignNotFound, InvalidTransition, ResolutionError
from services.recipient_resolver import RecipientResolver, ResolutionResult
from services.send_queue import SendQueue

logger = logging.getLogger(__name__)

DRAFT = CampaignStatus.DRAFT.value
SCHEDULED = CampaignStatus.SCHEDULED.value
SENDING = CampaignStatus.SENDING.value
PAUSED = CampaignStatus.PAUSED.value
SENT = CampaignStatus.SENT.value
FAILED = CampaignStatus.FAILED.value
CANCELLED = CampaignStatus.CANCELLED.value


@dataclass
class StartResult:
    campaign: Campaign
    resolution: ResolutionResult


class CampaignLifecycle:
    """Owns every campaign status change"""

    def __init__(self, session_factory, config, resolver: RecipientResolver = None, queue: SendQueue = None):
        self.session_factory = session_factory
        self.config = config
        self.resolver = resolver or RecipientResolver(config)
        self.queue = queue or SendQueue(config)

    def _get(self, session, campaign_id) -> Campaign:
        campaign = session.get(Campaign, campaign_id)
        if campaign is None or campaign.deleted_at is not None:
            raise CampaignNotFound(f"Campaign {campaign_id} not found")
        return campaign

    def _transition(self, session, campaign_id, allowed, target: str, action: str,
                    details: Dict[str, Any] = None, **values) -> Campaign:
        campaign = self._get(session, campaign_id)
        current = campaign.status
        if current not in allowed:
            raise InvalidTransition(campaign_id, current, target)

        result = session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == current)
            .values(status=target, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        session.refresh(campaign)
        if result.rowcount != 1:
            raise InvalidTransition(campaign_id, campaign.status, target, 'concurrent status change')

        audit_details = {'from': current, 'to': target}
        audit_details.update(details or {})
        record_audit_event(session, 'campaign', campaign_id, action, audit_details)
        logger.info(f"Campaign {campaign_id}: {current} -> {target}")
        return campaign

    def schedule(self, campaign_id, send_at: datetime, now: datetime = None) -> Campaign:
        """draft -> scheduled; targeting is validated but not materialized"""
        now = now or datetime.utcnow()
        session = self.session_factory()
        try:
            campaign = self._get(session, campaign_id)
            if campaign.status != DRAFT:
                raise InvalidTransition(campaign_id, campaign.status, SCHEDULED)
            if send_at <= now:
                raise InvalidTransition(campaign_id, campaign.status, SCHEDULED, 'send time must be in the future')
            if campaign.template_id is None and not (campaign.html_content or campaign.text_content):
                raise InvalidTransition(campaign_id, campaign.status, SCHEDULED, 'campaign has no content')

            self.resolver.validate(session, campaign)
            campaign = self._transition(session, campaign_id, (DRAFT,), SCHEDULED, 'scheduled',
                                        {'send_at': send_at.isoformat()}, scheduled_at=send_at)
            session.commit()
            return campaign
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def start_sending(self, campaign_id, now: datetime = None) -> StartResult:
        """
        scheduled -> sending, then materialize the recipient queue

        If targeting resolves to nobody, or cannot be resolved, nothing is
        queued, the campaign ends in ``failed`` and the error is re-raised.
        """
        now = now or datetime.utcnow()
        session = self.session_factory()
        try:
            campaign = self._transition(session, campaign_id, (SCHEDULED,), SENDING, 'sending_started',
                                        started_at=now)
            resolution = self.resolver.materialize(session, campaign)
            session.commit()
            logger.info(f"Campaign {campaign_id} sending to {resolution.total} recipients")
            return StartResult(campaign=campaign, resolution=resolution)
        except ResolutionError as e:
            session.rollback()
            logger.warning(f"Campaign {campaign_id} failed to resolve recipients: {e}")
            self._fail(session, campaign_id, str(e), now)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _fail(self, session, campaign_id, reason: str, now: datetime) -> None:
        try:
            self._transition(session, campaign_id, (SCHEDULED,), FAILED, 'failed', {'reason': reason},
                             failure_reason=reason, completed_at=now)
            session.commit()
        except InvalidTransition:
            session.rollback()
            logger.warning(f"Campaign {campaign_id} changed state before it could be marked failed")

    def start_due_campaigns(self, now: datetime = None) -> List[Any]:
        """Start every scheduled campaign whose send time has passed"""
        now = now or datetime.utcnow()
        session = self.session_factory()
        try:
            due = session.execute(
                select(Campaign.id).where(
                    Campaign.status == SCHEDULED,
                    Campaign.scheduled_at <= now,
                    Campaign.deleted_at.is_(None),
                ).order_by(Campaign.scheduled_at)
            ).scalars().all()
        finally:
            session.close()

        started = []
        for campaign_id in due:
            try:
                self.start_sending(campaign_id, now)
                started.append(campaign_id)
            except InvalidTransition as e:
                logger.debug(f"Skipping campaign {campaign_id}: {e}")
            except ResolutionError:
                continue
        return started

    def pause(self, campaign_id) -> Campaign:
        return self._simple_transition(campaign_id, (SENDING,), PAUSED, 'paused')

    def resume(self, campaign_id) -> Campaign:
        return self._simple_transition(campaign_id, (PAUSED,), SENDING, 'resumed')

    def cancel(self, campaign_id) -> Campaign:
        """
        Stop a campaign

        Unsent campaigns are cancelled outright. A sending campaign can only
        be paused since already-submitted messages cannot be recalled.
        """
        session = self.session_factory()
        try:
            campaign = self._get(session, campaign_id)
            if campaign.status in (DRAFT, SCHEDULED):
                campaign = self._transition(session, campaign_id, (DRAFT, SCHEDULED), CANCELLED, 'cancelled')
            elif campaign.status == SENDING:
                campaign = self._transition(session, campaign_id, (SENDING,), PAUSED, 'paused',
                                            {'requested': 'cancel'})
            elif campaign.status != PAUSED:
                raise InvalidTransition(campaign_id, campaign.status, CANCELLED)
            session.commit()
            return campaign
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def complete_if_drained(self, campaign_id, now: datetime = None) -> bool:
        """sending -> sent once every queue item is terminal"""
        now = now or datetime.utcnow()
        session = self.session_factory()
        try:
            campaign = self._get(session, campaign_id)
            if campaign.status != SENDING or not self.queue.is_drained(session, campaign_id):
                return False
            counts = self.queue.counts_by_status(session, campaign_id)
            self._transition(session, campaign_id, (SENDING,), SENT, 'completed', {'counts': counts},
                             completed_at=now)
            session.commit()
            return True
        except InvalidTransition:
            session.rollback()
            return False
        finally:
            session.close()

    def describe(self, campaign_id) -> Dict[str, Any]:
        """Status snapshot with queue counts"""
        session = self.session_factory()
        try:
            campaign = self._get(session, campaign_id)
            return {
                'id': str(campaign.id),
                'name': campaign.name,
                'status': campaign.status,
                'priority': campaign.priority,
                'failure_reason': campaign.failure_reason,
                'scheduled_at': campaign.scheduled_at.isoformat() if campaign.scheduled_at else None,
                'started_at': campaign.started_at.isoformat() if campaign.started_at else None,
                'completed_at': campaign.completed_at.isoformat() if campaign.completed_at else None,
                'queue': self.queue.counts_by_status(session, campaign_id),
            }
        finally:
            session.close()

    def _simple_transition(self, campaign_id, allowed, target: str, action: str) -> Campaign:
        session = self.session_factory()
        try:
            campaign = self._transition(session, campaign_id, allowed, target, action)
            session.commit()
            return campaign
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
