"""
Signed tracking tokens for open pixels, click redirects and unsubscribe links
"""

import base64
import hashlib
import hmac
import uuid
from typing import Optional
from urllib.parse import urlencode


class TrackingTokenError(ValueError):
    pass


class TrackingSigner:
    """HMAC-signs queue item ids so tracking URLs cannot be forged"""

    SIGNATURE_LENGTH = 16

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Tracking secret must be configured")
        self._key = secret.encode('utf-8')

    def _signature(self, payload: str, bound: str = '') -> str:
        message = payload.encode('ascii')
        if bound:
            message += b'\n' + bound.encode('utf-8')
        digest = hmac.new(self._key, message, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')[:self.SIGNATURE_LENGTH]

    def make_token(self, queue_item_id: uuid.UUID, bound: str = '') -> str:
        """
        Token for ``queue_item_id``

        A non-empty ``bound`` value (a click target) is covered by the
        signature and must be presented again to parse the token.
        """
        payload = base64.urlsafe_b64encode(queue_item_id.bytes).decode('ascii').rstrip('=')
        return f"{payload}.{self._signature(payload, bound)}"

    def parse_token(self, token: str, bound: str = '') -> uuid.UUID:
        try:
            payload, signature = token.split('.', 1)
        except (AttributeError, ValueError):
            raise TrackingTokenError("Malformed tracking token")

        if not hmac.compare_digest(signature, self._signature(payload, bound)):
            raise TrackingTokenError("Invalid tracking token signature")

        try:
            raw = base64.urlsafe_b64decode(payload + '=' * (-len(payload) % 4))
            return uuid.UUID(bytes=raw)
        except ValueError:
            raise TrackingTokenError("Malformed tracking token payload")


class TrackingUrlBuilder:
    """Builds the public tracking URLs embedded into outgoing mail"""

    def __init__(self, base_url: str, signer: TrackingSigner):
        self.base_url = base_url.rstrip('/')
        self.signer = signer

    def open_url(self, queue_item_id: uuid.UUID) -> str:
        return f"{self.base_url}/t/o/{self.signer.make_token(queue_item_id)}"

    def click_url(self, queue_item_id: uuid.UUID, target: str) -> str:
        token = self.signer.make_token(queue_item_id, bound=target)
        return f"{self.base_url}/t/c/{token}?{urlencode({'u': target})}"

    def unsubscribe_url(self, queue_item_id: uuid.UUID) -> str:
        return f"{self.base_url}/t/u/{self.signer.make_token(queue_item_id)}"


def tracking_signer(config) -> Optional[TrackingSigner]:
    """
    Signer shared by the processes that mint and verify tracking tokens

    Raises:
        ValueError: TRACKING_BASE_URL is set without a TRACKING_SECRET
    """
    if not config.TRACKING_SECRET:
        if config.TRACKING_BASE_URL:
            raise ValueError("TRACKING_SECRET must be set when TRACKING_BASE_URL is configured")
        return None
    return TrackingSigner(config.TRACKING_SECRET)


def build_tracking_urls(config) -> Optional[TrackingUrlBuilder]:
    signer = tracking_signer(config)
    if not config.TRACKING_BASE_URL:
        return None
    return TrackingUrlBuilder(config.TRACKING_BASE_URL, signer)
