# api/webhooks.py
"""
Delivery provider webhook receiver
"""

import logging

from flask import Blueprint, jsonify, request

from middleware.security import require_webhook_signature
from services.event_recorder import DROPPED
from services.pipeline import pipeline

# Create blueprint
webhooks_bp = Blueprint('webhooks', __name__)
logger = logging.getLogger(__name__)


@webhooks_bp.route('/api/webhooks/events', methods=['POST'])
@require_webhook_signature
def receive_events():
    """
    Accept a single event or {"events": [...]}

    Each event: provider_message_id, event_type, timestamp, metadata.
    Unknown message ids are counted as dropped, never rejected.
    """
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    events = payload.get('events') if isinstance(payload, dict) and 'events' in payload else [payload]
    if not isinstance(events, list):
        return jsonify({'error': "'events' must be a list"}), 400

    recorder = pipeline().recorder
    counts = {'recorded': 0, 'duplicate': 0, 'dropped': 0}

    for event in events:
        if not isinstance(event, dict) or not event.get('provider_message_id') or not event.get('event_type'):
            logger.warning(f"Dropping malformed webhook event: {event!r}")
            counts[DROPPED] += 1
            continue

        metadata = event.get('metadata') or {}
        if not isinstance(metadata, dict):
            metadata = {'raw': metadata}

        result = recorder.record(
            provider_message_id=event['provider_message_id'],
            event_type=event['event_type'],
            occurred_at=event.get('timestamp'),
            metadata=metadata,
        )
        counts[result.status] += 1

    logger.info(f"Webhook processed {len(events)} events: {counts}")
    return jsonify(counts), 200
