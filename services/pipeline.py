# services/pipeline.py
"""
Service wiring shared by the Flask app and its blueprints
"""

from dataclasses import dataclass
from typing import Any, Optional

from flask import current_app

from core.tracking import TrackingSigner, tracking_signer
from services.analytics import StatisticsAggregator
from services.campaign_lifecycle import CampaignLifecycle
from services.event_recorder import EventRecorder


@dataclass
class PipelineServices:
    session_factory: Any
    lifecycle: CampaignLifecycle
    recorder: EventRecorder
    statistics: StatisticsAggregator
    signer: Optional[TrackingSigner]

    @classmethod
    def build(cls, session_factory, config, cache=None) -> 'PipelineServices':
        statistics = StatisticsAggregator(session_factory, config, cache=cache)
        return cls(
            session_factory=session_factory,
            lifecycle=CampaignLifecycle(session_factory, config),
            recorder=EventRecorder(session_factory, config, statistics=statistics),
            statistics=statistics,
            signer=tracking_signer(config),
        )


def pipeline() -> PipelineServices:
    """Services registered on the current Flask app"""
    return current_app.extensions['pipeline']
