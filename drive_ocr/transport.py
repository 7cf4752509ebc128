"""Shared httpx plumbing for outbound Google calls.

One ``httpx.AsyncClient`` is created at startup and shared by the token
broker and every Drive session. Transport-level failures are mapped onto
``TransportTimeout`` / ``TransportError`` so each caller can fold them into
its own phase failure.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from drive_ocr.config import OCR_HTTP_MAX_CONNECTIONS, OCR_HTTP_TIMEOUT_SECONDS
from drive_ocr.errors import TransportError, TransportTimeout

logger = logging.getLogger(__name__)


def build_http_client(
    *,
    timeout: float = OCR_HTTP_TIMEOUT_SECONDS,
    max_connections: int = OCR_HTTP_MAX_CONNECTIONS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the process-wide async client (every request carries a timeout)."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        ),
        transport=transport,
    )


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request, translating httpx transport errors."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransportTimeout(f"{method} {url} timed out") from e
    except httpx.HTTPError as e:
        raise TransportError(f"{method} {url} failed: {type(e).__name__}: {e}") from e


def error_detail(response: httpx.Response) -> str | None:
    """Extract a human-readable error from a Google error payload.

    Handles both OAuth (``{"error": "...", "error_description": "..."}``) and
    API (``{"error": {"message": "..."}}``) shapes.
    """
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = response.text.strip()
        return text[:200] or None

    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else None
    if isinstance(error, str):
        description = payload.get("error_description")
        return f"{error}: {description}" if description else error
    return None


def describe_status(response: httpx.Response) -> str:
    """Format ``API Error (403): <detail>`` for a failed response."""
    detail = error_detail(response)
    base = f"API Error ({response.status_code})"
    return f"{base}: {detail}" if detail else base
