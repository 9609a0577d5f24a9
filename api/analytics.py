# api/analytics.py
"""
Campaign reporting endpoints
"""

import logging
import uuid

from flask import Blueprint, abort, current_app, jsonify, request

from services.pipeline import pipeline

# Create blueprint
analytics_bp = Blueprint('analytics', __name__)
logger = logging.getLogger(__name__)


@analytics_bp.route('/campaigns/<campaign_id>/statistics', methods=['GET'])
def get_campaign_statistics(campaign_id):
    """Campaign statistics, recomputed when stale or when ?refresh=true"""
    try:
        campaign_uuid = uuid.UUID(campaign_id)
    except ValueError:
        abort(404)

    force_refresh = request.args.get('refresh', 'false').lower() == 'true'
    report = pipeline().statistics.get_campaign_report(campaign_uuid, force_refresh=force_refresh)

    response = jsonify(report)
    response.headers['Cache-Control'] = f"private, max-age={current_app.config['STATS_POLL_INTERVAL']}"
    return response
