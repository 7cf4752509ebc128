"""Identity rotation and a bounded pool of authenticated sessions.

Identities are picked uniformly at random to spread load across service
accounts. A released session goes back into the pool (up to a fixed size)
so the next request can skip credential lookup and token minting entirely.
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from drive_ocr.config import OCR_SESSION_POOL_MAX
from drive_ocr.credentials import CredentialSource
from drive_ocr.drive import DriveClient
from drive_ocr.errors import AuthenticationFailed
from drive_ocr.tokens import TokenBroker
from drive_ocr.types import AccessToken, Identity

logger = logging.getLogger(__name__)


@dataclass
class Session:
    identity: Identity
    token: AccessToken = field(repr=False)
    client: DriveClient = field(repr=False)
    created_at: float

    @property
    def principal(self) -> str:
        return self.identity.principal


class IdentityRotator:
    def __init__(
        self,
        credentials: CredentialSource,
        tokens: TokenBroker,
        http: httpx.AsyncClient,
        *,
        max_pool_size: int = OCR_SESSION_POOL_MAX,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        client_factory: Callable[[httpx.AsyncClient, str], DriveClient] = DriveClient,
    ) -> None:
        self._credentials = credentials
        self._tokens = tokens
        self._http = http
        self._max_pool_size = max(0, max_pool_size)
        self._rng = rng or random.Random()
        self._clock = clock
        self._client_factory = client_factory
        self._pool: deque[Session] = deque()

    @property
    def pool_size(self) -> int:
        return len(self._pool)

    async def acquire_session(self) -> Session:
        """Check out a session; raises NoCredentialsAvailable or AuthenticationFailed."""
        now = self._clock()
        while self._pool:
            session = self._pool.pop()
            if session.token.is_valid(now):
                return session
            logger.debug("Dropping pooled session for %s with expired token", session.principal)

        identities = await self._credentials.list_identities()
        identity = self._rng.choice(identities)
        try:
            token = await self._tokens.get_token(identity)
        except AuthenticationFailed as e:
            e.label = identity.label
            raise
        logger.debug("New session for credential %s (%s)", identity.label, identity.principal)
        return Session(
            identity=identity,
            token=token,
            client=self._client_factory(self._http, token.value),
            created_at=self._clock(),
        )

    def release(self, session: Session, *, healthy: bool = True) -> None:
        """Return *session* to the pool, or drop it if unhealthy or the pool is full.

        An unhealthy session's token was rejected upstream, so it is also
        evicted from the token cache.
        """
        if not healthy:
            logger.info("Discarding session for %s after auth failure", session.principal)
            self._tokens.invalidate(session.principal)
            return
        if len(self._pool) < self._max_pool_size:
            self._pool.append(session)
