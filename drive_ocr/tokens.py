"""OAuth access tokens for service-account identities.

A JWT assertion is signed with the identity's private key (RS256) and
exchanged at the token endpoint for a bearer token. Tokens are cached per
principal with a TTL shorter than their real lifetime, so a cached token never
expires mid-request. Concurrent misses for the same principal share one
exchange.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence

import httpx
from google.auth import crypt, jwt

from drive_ocr.config import (
    OCR_ASSERTION_LIFETIME_SECONDS,
    OCR_DRIVE_SCOPE,
    OCR_TOKEN_CACHE_MAX,
    OCR_TOKEN_CACHE_TTL_SECONDS,
)
from drive_ocr.errors import AuthenticationFailed, TransportError
from drive_ocr.transport import error_detail, send
from drive_ocr.types import AccessToken, Identity

logger = logging.getLogger(__name__)

_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Never cache a token closer than this to its real expiry.
_EXPIRY_MARGIN_SECONDS = 60


def build_assertion(identity: Identity, *, scope: str, now: int) -> str:
    """Sign the JWT-bearer assertion for *identity* (compact serialization)."""
    signer = crypt.RSASigner.from_string(identity.private_key, identity.private_key_id)
    payload = {
        "iss": identity.principal,
        "scope": scope,
        "aud": identity.token_uri,
        "iat": now,
        "exp": now + OCR_ASSERTION_LIFETIME_SECONDS,
    }
    return jwt.encode(signer, payload).decode("ascii")


class TokenBroker:
    """Mints and caches access tokens keyed by principal."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        scope: str = OCR_DRIVE_SCOPE,
        cache_ttl: float = OCR_TOKEN_CACHE_TTL_SECONDS,
        max_entries: int = OCR_TOKEN_CACHE_MAX,
        on_token_minted: Callable[[], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._scope = scope
        self._cache_ttl = cache_ttl
        self._max_entries = max(1, max_entries)
        self._on_token_minted = on_token_minted
        self._clock = clock
        self._cache: OrderedDict[str, AccessToken] = OrderedDict()
        self._inflight: dict[str, asyncio.Lock] = {}
        self.exchange_count = 0

    def cached(self, principal: str) -> AccessToken | None:
        """Return the cached token for *principal* if it is still valid."""
        token = self._cache.get(principal)
        if token is None:
            return None
        if not token.is_valid(self._clock()):
            del self._cache[principal]
            return None
        self._cache.move_to_end(principal)
        return token

    def invalidate(self, principal: str) -> None:
        if self._cache.pop(principal, None) is not None:
            logger.info("Invalidated cached token for %s", principal)

    async def get_token(self, identity: Identity) -> AccessToken:
        token = self.cached(identity.principal)
        if token is not None:
            logger.debug("Using cached token for %s", identity.principal)
            return token

        lock = self._inflight.setdefault(identity.principal, asyncio.Lock())
        async with lock:
            # Another task may have finished the exchange while we waited.
            token = self.cached(identity.principal)
            if token is not None:
                return token
            token = await self._exchange(identity)
            self._store(token)

        if self._on_token_minted is not None:
            try:
                await self._on_token_minted()
            except Exception:
                logger.warning("Post-token hook failed", exc_info=True)
        return token

    async def prewarm(self, identities: Sequence[Identity]) -> int:
        """Fetch tokens for every identity concurrently; return how many succeeded."""
        logger.info("Pre-warming authentication tokens for %d identities", len(identities))

        async def _warm(identity: Identity) -> bool:
            try:
                await self.get_token(identity)
            except AuthenticationFailed as e:
                logger.error("Failed to pre-warm token for %s: %s", identity.principal, e)
                return False
            logger.info("Pre-warmed token for %s", identity.principal)
            return True

        results = await asyncio.gather(*(_warm(i) for i in identities))
        warmed = sum(1 for ok in results if ok)
        logger.info("Pre-warmed %d/%d authentication tokens", warmed, len(identities))
        return warmed

    def _store(self, token: AccessToken) -> None:
        self._cache[token.principal] = token
        self._cache.move_to_end(token.principal)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    async def _exchange(self, identity: Identity) -> AccessToken:
        now = self._clock()
        try:
            assertion = build_assertion(identity, scope=self._scope, now=int(now))
        except (ValueError, TypeError) as e:
            raise AuthenticationFailed(f"Failed to generate JWT for {identity.principal}: {e}") from e

        try:
            resp = await send(
                self._http,
                "POST",
                identity.token_uri,
                data={"grant_type": _GRANT_TYPE, "assertion": assertion},
            )
        except TransportError as e:
            raise AuthenticationFailed(f"Failed to get access token: {e}") from e
        self.exchange_count += 1

        if resp.status_code != 200:
            detail = error_detail(resp)
            logger.error(
                "Token exchange rejected for %s (status=%d): %s",
                identity.principal,
                resp.status_code,
                detail,
            )
            message = f"Failed to get access token ({resp.status_code})"
            raise AuthenticationFailed(
                f"{message}: {detail}" if detail else message,
                status_code=resp.status_code,
                detail=detail,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise AuthenticationFailed("Token endpoint returned a non-JSON payload") from e
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise AuthenticationFailed("Token endpoint response missing access_token")

        try:
            expires_in = float(body.get("expires_in", OCR_ASSERTION_LIFETIME_SECONDS))
        except (TypeError, ValueError):
            expires_in = float(OCR_ASSERTION_LIFETIME_SECONDS)
        ttl = max(0.0, min(self._cache_ttl, expires_in - _EXPIRY_MARGIN_SECONDS))

        logger.info("Minted access token for %s (cached %.0fs)", identity.principal, ttl)
        return AccessToken(
            value=access_token,
            expires_at=now + expires_in,
            principal=identity.principal,
            cache_until=now + ttl,
        )
