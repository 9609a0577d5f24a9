# middleware/security.py
"""
Security Middleware for Request Processing
"""

import hashlib
import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)


def security_headers(response):
    """Add security headers to all responses"""
    for header, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(header, value)
    return response


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def _unconfigured(setting: str):
    """
    Response for a protected endpoint whose secret is not configured

    Development and test apps run open; anything else refuses the request.
    """
    if current_app.debug or current_app.testing:
        return None
    logger.error(f"{setting} is not configured, refusing {request.endpoint}")
    return jsonify({'error': f"{setting} is not configured"}), 503


def require_webhook_signature(f):
    """Decorator to verify the provider's HMAC-SHA256 body signature"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('WEBHOOK_SECRET')
        if not secret:
            refusal = _unconfigured('WEBHOOK_SECRET')
            if refusal is not None:
                return refusal
        else:
            provided = request.headers.get('X-Webhook-Signature', '')
            if provided.startswith('sha256='):
                provided = provided[len('sha256='):]
            expected = compute_signature(secret, request.get_data())
            if not hmac.compare_digest(provided, expected):
                logger.warning(f"Rejected webhook with invalid signature from {request.remote_addr}")
                return jsonify({'error': 'Invalid signature'}), 401

        return f(*args, **kwargs)
    return decorated_function


def require_operator_key(f):
    """Decorator to require the operator API key"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = current_app.config.get('OPERATOR_API_KEY')
        if not api_key:
            refusal = _unconfigured('OPERATOR_API_KEY')
            if refusal is not None:
                return refusal
        else:
            provided = request.headers.get('X-API-Key', '')
            if not hmac.compare_digest(provided, api_key):
                logger.warning(f"Unauthorized operator request to {request.endpoint} from {request.remote_addr}")
                return jsonify({'error': 'Authentication required'}), 401

        return f(*args, **kwargs)
    return decorated_function
