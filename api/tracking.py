# api/tracking.py
"""
Open pixel, click redirect and unsubscribe endpoints embedded in outgoing mail
"""

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from flask import Blueprint, Response, jsonify, redirect, request
from markupsafe import escape

from core.database_models import EventType, QueueItem
from core.tracking import TrackingTokenError
from services.pipeline import pipeline

# Create blueprint
tracking_bp = Blueprint('tracking', __name__)
logger = logging.getLogger(__name__)

# 1x1 transparent GIF
PIXEL_GIF = base64.b64decode('R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7')

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store, must-revalidate, private',
    'Pragma': 'no-cache',
    'Expires': '0',
}


def _queue_item_for(token: str, bound: str = '') -> Optional[QueueItem]:
    services = pipeline()
    if services.signer is None:
        return None
    try:
        queue_item_id = services.signer.parse_token(token, bound=bound)
    except TrackingTokenError as e:
        logger.warning(f"Rejected tracking token from {request.remote_addr}: {e}")
        return None

    session = services.session_factory()
    try:
        return session.get(QueueItem, queue_item_id)
    finally:
        session.close()


def _requester() -> Dict[str, Any]:
    return {
        'ip_address': request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip(),
        'user_agent': request.headers.get('User-Agent', ''),
    }


def _record(item: QueueItem, event_type: EventType, metadata: Dict[str, Any]):
    if not item.provider_message_id:
        logger.info(f"Ignoring {event_type.value} for queue item {item.id} without a provider message id")
        return None
    return pipeline().recorder.record(
        provider_message_id=item.provider_message_id,
        event_type=event_type.value,
        occurred_at=datetime.utcnow(),
        metadata=metadata,
    )


@tracking_bp.route('/t/o/<token>', methods=['GET'])
def track_open(token):
    """Record an open; the pixel is served whatever the token says"""
    item = _queue_item_for(token)
    if item is not None:
        _record(item, EventType.OPEN, _requester())
    return Response(PIXEL_GIF, mimetype='image/gif', headers=NO_CACHE_HEADERS)


@tracking_bp.route('/t/c/<token>', methods=['GET'])
def track_click(token):
    """Record a click and redirect to the original link"""
    target = request.args.get('u', '')
    if urlparse(target).scheme not in ('http', 'https'):
        return jsonify({'error': 'Invalid link'}), 400

    item = _queue_item_for(token, bound=target)
    if item is None:
        # Never redirect to a target the token does not sign
        return jsonify({'error': 'Invalid link'}), 404

    metadata = _requester()
    metadata['url'] = target
    _record(item, EventType.CLICK, metadata)
    return redirect(target, code=302)


@tracking_bp.route('/t/u/<token>', methods=['GET', 'POST'])
def unsubscribe(token):
    """
    Unsubscribe landing page (GET) and RFC 8058 one-click endpoint (POST)
    """
    item = _queue_item_for(token)
    if item is None:
        return jsonify({'error': 'Invalid unsubscribe link'}), 404

    if request.method == 'GET':
        html = (
            "<!DOCTYPE html><html><body>"
            f"<p>Unsubscribe {escape(item.email)} from this newsletter?</p>"
            f"<form method=\"post\" action=\"{escape(request.path)}\">"
            "<button type=\"submit\">Unsubscribe</button></form>"
            "</body></html>"
        )
        return Response(html, mimetype='text/html', headers=NO_CACHE_HEADERS)

    one_click = request.form.get('List-Unsubscribe') == 'One-Click'
    metadata = _requester()
    metadata.update({
        'event_id': f"unsubscribe:{item.id}",  # repeated clicks collapse into one event
        'source': 'one_click' if one_click else 'link',
        'reason': request.form.get('reason'),
    })
    result = _record(item, EventType.UNSUBSCRIBE, metadata)

    if one_click:
        return jsonify({'status': 'unsubscribed', 'result': result.status if result else 'ignored'}), 200
    html = "<!DOCTYPE html><html><body><p>You have been unsubscribed.</p></body></html>"
    return Response(html, mimetype='text/html', headers=NO_CACHE_HEADERS)
