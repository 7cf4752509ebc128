"""Builds the broker's object graph around one shared HTTP client."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from drive_ocr.batch import BatchController
from drive_ocr.config import (
    OCR_BATCH_MAX_CONCURRENCY,
    OCR_CREDENTIALS_DIR,
    OCR_MAX_PAYLOAD_BYTES,
    OCR_SESSION_POOL_MAX,
    OCR_TEMP_CREDENTIALS_DIR,
)
from drive_ocr.credentials import CredentialSource, ShutdownHook, build_credential_source
from drive_ocr.errors import NoCredentialsAvailable
from drive_ocr.pipeline import OcrPipeline
from drive_ocr.rotator import IdentityRotator
from drive_ocr.tokens import TokenBroker
from drive_ocr.transport import build_http_client

logger = logging.getLogger(__name__)


@dataclass
class OcrServices:
    http: httpx.AsyncClient
    credentials: CredentialSource
    tokens: TokenBroker
    rotator: IdentityRotator
    pipeline: OcrPipeline
    batch: BatchController
    shutdown_hook: ShutdownHook

    async def prewarm(self) -> int:
        """Resolve credentials and mint a token for each; 0 if none resolve."""
        try:
            identities = await self.credentials.list_identities()
        except NoCredentialsAvailable as e:
            logger.error("Failed to pre-warm authentication tokens: %s", e)
            return 0
        warmed = await self.tokens.prewarm(identities)
        await self.credentials.release_ephemeral_files()
        return warmed

    async def aclose(self) -> None:
        await self.credentials.release_ephemeral_files()
        await self.http.aclose()


def build_services(
    *,
    http: httpx.AsyncClient | None = None,
    environ: Mapping[str, str] | None = None,
    credentials_dir: str = OCR_CREDENTIALS_DIR,
    temp_dir: str = OCR_TEMP_CREDENTIALS_DIR,
    max_payload_bytes: int = OCR_MAX_PAYLOAD_BYTES,
    max_concurrency: int = OCR_BATCH_MAX_CONCURRENCY,
    session_pool_max: int = OCR_SESSION_POOL_MAX,
    register_shutdown_hook: bool = True,
) -> OcrServices:
    http = http or build_http_client()
    credentials = build_credential_source(environ=environ, credentials_dir=credentials_dir, temp_dir=temp_dir)
    tokens = TokenBroker(http, on_token_minted=credentials.release_ephemeral_files)
    rotator = IdentityRotator(credentials, tokens, http, max_pool_size=session_pool_max)
    pipeline = OcrPipeline(rotator)
    batch = BatchController(pipeline, max_payload_bytes=max_payload_bytes, max_concurrency=max_concurrency)

    hook = ShutdownHook(credentials.release_ephemeral_files_sync)
    if register_shutdown_hook:
        hook.register()

    return OcrServices(
        http=http,
        credentials=credentials,
        tokens=tokens,
        rotator=rotator,
        pipeline=pipeline,
        batch=batch,
        shutdown_hook=hook,
    )
