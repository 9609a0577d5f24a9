# api/campaigns.py
"""
Operator API for campaign lifecycle control
"""

import logging
import uuid
from datetime import datetime, timezone

from flask import Blueprint, abort, jsonify, request

from middleware.security import require_operator_key
from services.pipeline import pipeline

# Create blueprint
campaigns_bp = Blueprint('campaigns', __name__)
logger = logging.getLogger(__name__)


def _campaign_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        abort(404)


def _summary(campaign):
    return {
        'id': str(campaign.id),
        'status': campaign.status,
        'scheduled_at': campaign.scheduled_at.isoformat() if campaign.scheduled_at else None,
        'failure_reason': campaign.failure_reason,
    }


@campaigns_bp.route('/<campaign_id>/schedule', methods=['POST'])
@require_operator_key
def schedule_campaign(campaign_id):
    """Schedule a draft campaign: {"send_at": ISO-8601}"""
    data = request.get_json(silent=True) or {}
    try:
        send_at = datetime.fromisoformat(str(data['send_at']).replace('Z', '+00:00'))
    except (KeyError, ValueError):
        return jsonify({'error': "'send_at' must be an ISO-8601 timestamp"}), 400
    if send_at.tzinfo is not None:
        send_at = send_at.astimezone(timezone.utc).replace(tzinfo=None)

    campaign = pipeline().lifecycle.schedule(_campaign_id(campaign_id), send_at)
    return jsonify(_summary(campaign)), 200


@campaigns_bp.route('/<campaign_id>/start', methods=['POST'])
@require_operator_key
def start_campaign(campaign_id):
    """Start a scheduled campaign now"""
    result = pipeline().lifecycle.start_sending(_campaign_id(campaign_id))
    response = _summary(result.campaign)
    response['recipients'] = result.resolution.total
    response['queued'] = result.resolution.created
    return jsonify(response), 200


@campaigns_bp.route('/<campaign_id>/pause', methods=['POST'])
@require_operator_key
def pause_campaign(campaign_id):
    campaign = pipeline().lifecycle.pause(_campaign_id(campaign_id))
    return jsonify(_summary(campaign)), 200


@campaigns_bp.route('/<campaign_id>/resume', methods=['POST'])
@require_operator_key
def resume_campaign(campaign_id):
    campaign = pipeline().lifecycle.resume(_campaign_id(campaign_id))
    return jsonify(_summary(campaign)), 200


@campaigns_bp.route('/<campaign_id>/cancel', methods=['POST'])
@require_operator_key
def cancel_campaign(campaign_id):
    """Cancel an unsent campaign, or pause one that is already sending"""
    campaign = pipeline().lifecycle.cancel(_campaign_id(campaign_id))
    return jsonify(_summary(campaign)), 200


@campaigns_bp.route('/<campaign_id>/status', methods=['GET'])
@require_operator_key
def campaign_status(campaign_id):
    return jsonify(pipeline().lifecycle.describe(_campaign_id(campaign_id))), 200
