import uuid

import pytest

from core.tracking import (
    TrackingSigner, TrackingTokenError, TrackingUrlBuilder, build_tracking_urls, tracking_signer
)


@pytest.fixture
def signer():
    return TrackingSigner('tracking-secret')


def test_token_roundtrip(signer):
    item_id = uuid.uuid4()

    assert signer.parse_token(signer.make_token(item_id)) == item_id


def test_tampered_token_rejected(signer):
    _, signature = signer.make_token(uuid.uuid4()).split('.')
    forged = signer.make_token(uuid.uuid4()).split('.')[0]

    with pytest.raises(TrackingTokenError):
        signer.parse_token(f"{forged}.{signature}")


def test_other_secret_rejected(signer):
    token = TrackingSigner('another-secret').make_token(uuid.uuid4())

    with pytest.raises(TrackingTokenError):
        signer.parse_token(token)


@pytest.mark.parametrize('token', ['', 'no-separator', 'bad.sig'])
def test_malformed_token_rejected(signer, token):
    with pytest.raises(TrackingTokenError):
        signer.parse_token(token)


def test_secret_required():
    with pytest.raises(ValueError):
        TrackingSigner('')


def test_url_builder(signer):
    item_id = uuid.uuid4()
    builder = TrackingUrlBuilder('https://track.example.com/', signer)
    token = signer.make_token(item_id)

    assert builder.open_url(item_id) == f"https://track.example.com/t/o/{token}"
    assert builder.unsubscribe_url(item_id) == f"https://track.example.com/t/u/{token}"
    click_token = signer.make_token(item_id, bound='https://example.com/a?b=1')
    assert builder.click_url(item_id, 'https://example.com/a?b=1') == (
        f"https://track.example.com/t/c/{click_token}?u=https%3A%2F%2Fexample.com%2Fa%3Fb%3D1"
    )


def test_builder_needs_base_url(config):
    class Untracked(config):
        TRACKING_BASE_URL = None

    assert build_tracking_urls(Untracked) is None
    assert build_tracking_urls(config) is not None


def test_bound_token_roundtrip(signer):
    item_id = uuid.uuid4()
    token = signer.make_token(item_id, bound='https://example.com/offer')

    assert signer.parse_token(token, bound='https://example.com/offer') == item_id


@pytest.mark.parametrize('bound', ['', 'https://evil.example.com'])
def test_bound_token_rejects_other_target(signer, bound):
    token = signer.make_token(uuid.uuid4(), bound='https://example.com/offer')

    with pytest.raises(TrackingTokenError):
        signer.parse_token(token, bound=bound)


def test_unbound_token_does_not_sign_a_target(signer):
    token = signer.make_token(uuid.uuid4())

    with pytest.raises(TrackingTokenError):
        signer.parse_token(token, bound='https://example.com/offer')


def test_tracking_secret_required_with_base_url(config):
    class NoSecret(config):
        TRACKING_SECRET = None

    with pytest.raises(ValueError):
        tracking_signer(NoSecret)
    with pytest.raises(ValueError):
        build_tracking_urls(NoSecret)


def test_untracked_config_needs_no_secret(config):
    class Untracked(config):
        TRACKING_SECRET = None
        TRACKING_BASE_URL = None

    assert tracking_signer(Untracked) is None
    assert build_tracking_urls(Untracked) is None
