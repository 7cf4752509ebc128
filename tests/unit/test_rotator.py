"""Unit tests for drive_ocr.rotator: random selection and session pooling."""

from __future__ import annotations

import random

import pytest

from drive_ocr.credentials import CredentialSource
from drive_ocr.errors import AuthenticationFailed, NoCredentialsAvailable
from drive_ocr.rotator import IdentityRotator
from drive_ocr.tokens import TokenBroker


class StaticStrategy:
    name = "static"

    def __init__(self, identities):
        self._identities = list(identities)

    async def load(self):
        return self._identities


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def identities(make_identity):
    return [make_identity(f"sa{i}@p.iam", label=str(i)) for i in range(1, 4)]


def _rotator(http_client, identities, *, clock=None, max_pool_size=20, seed=7):
    clock = clock or FakeClock()
    source = CredentialSource([StaticStrategy(identities)])
    tokens = TokenBroker(http_client, clock=clock)
    return IdentityRotator(
        source,
        tokens,
        http_client,
        max_pool_size=max_pool_size,
        rng=random.Random(seed),
        clock=clock,
    ), tokens


class TestIdentityRotator:
    async def test_acquire_builds_session(self, http_client, identities):
        rotator, _ = _rotator(http_client, identities)
        session = await rotator.acquire_session()
        assert session.identity in identities
        assert session.token.principal == session.principal

    async def test_selection_spreads_over_identities(self, http_client, identities):
        rotator, _ = _rotator(http_client, identities, max_pool_size=0)
        seen = {(await rotator.acquire_session()).principal for _ in range(60)}
        assert seen == {i.principal for i in identities}

    async def test_released_session_is_reused(self, http_client, fake_google, identities):
        rotator, _ = _rotator(http_client, identities)
        first = await rotator.acquire_session()
        rotator.release(first)
        assert rotator.pool_size == 1

        second = await rotator.acquire_session()
        assert second is first
        assert rotator.pool_size == 0
        assert len(fake_google.calls_to("token")) == 1

    async def test_pool_is_bounded(self, http_client, identities):
        rotator, _ = _rotator(http_client, identities, max_pool_size=2)
        sessions = [await rotator.acquire_session() for _ in range(4)]
        for s in sessions:
            rotator.release(s)
        assert rotator.pool_size == 2

    async def test_expired_pooled_session_is_discarded(self, http_client, identities):
        clock = FakeClock()
        rotator, _ = _rotator(http_client, identities, clock=clock)
        stale = await rotator.acquire_session()
        rotator.release(stale)

        clock.now += 3600
        fresh = await rotator.acquire_session()
        assert fresh is not stale
        assert fresh.token.is_valid(clock.now)
        assert rotator.pool_size == 0

    async def test_unhealthy_release_drops_session_and_token(self, http_client, identities):
        rotator, tokens = _rotator(http_client, identities)
        session = await rotator.acquire_session()
        rotator.release(session, healthy=False)

        assert rotator.pool_size == 0
        assert tokens.cached(session.principal) is None

    async def test_no_identities(self, http_client):
        rotator, _ = _rotator(http_client, [])
        with pytest.raises(NoCredentialsAvailable):
            await rotator.acquire_session()

    async def test_token_failure_propagates(self, http_client, fake_google, identities):
        fake_google.token_status = 403
        rotator, _ = _rotator(http_client, identities)
        with pytest.raises(AuthenticationFailed) as exc:
            await rotator.acquire_session()
        assert exc.value.label in {i.label for i in identities}
