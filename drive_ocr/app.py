"""FastAPI entry point for the Drive OCR broker.

Endpoints (OCR routes are served under both ``/ocr`` and ``/api/ocr``):
- POST /ocr/base64 : One object or an array of base64 images
- POST /ocr/upload : Multipart upload (field ``images``), first file only
- GET  /health     : Liveness with process uptime
- GET  /readiness  : Credentials resolvable
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from drive_ocr.config import (
    LOG_LEVEL,
    OCR_ALLOWED_UPLOAD_TYPES,
    OCR_CORS_ALLOW_HEADERS,
    OCR_CORS_ALLOW_METHODS,
    OCR_CORS_ALLOW_ORIGINS,
    OCR_LOG_DIR,
    OCR_MAX_BODY_BYTES,
    OCR_PREWARM_TOKENS,
    OCR_RATE_LIMIT,
    OCR_RATE_LIMIT_ENABLED,
)
from drive_ocr.errors import NoCredentialsAvailable, ValidationFailed
from drive_ocr.logging_config import generate_request_id, setup_logging
from drive_ocr.models import BatchResponse, HealthResponse, OcrBase64Request, OcrResultResponse
from drive_ocr.services import OcrServices, build_services
from drive_ocr.types import OcrResult, WorkItem

logger = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: build services, pre-warm tokens, close on shutdown."""
    setup_logging(level=LOG_LEVEL, log_dir=OCR_LOG_DIR)
    services = build_services()
    app.state.services = services
    logger.info("OCR API service started")
    if OCR_PREWARM_TOKENS:
        await services.prewarm()
    yield
    await services.aclose()
    logger.info("OCR API service stopped")


app = FastAPI(
    title="Drive OCR Broker",
    version="0.1.0",
    lifespan=lifespan,
)


def _failure(file_name: str, error: str) -> list[dict[str, Any]]:
    result = OcrResult(file_name=file_name, error=error)
    return _dump([result])


def _dump(results: list[OcrResult]) -> list[dict[str, Any]]:
    return [OcrResultResponse.from_result(r).model_dump(by_alias=True) for r in results]


# -- Rate limiting ------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address, enabled=OCR_RATE_LIMIT_ENABLED)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content=_failure("N/A", "Rate limit exceeded."))


@app.exception_handler(RequestValidationError)
async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = "; ".join(str(err.get("msg", "invalid value")) for err in exc.errors())
    return JSONResponse(status_code=400, content=_failure("N/A", f"Invalid request: {messages}"))


@app.exception_handler(Exception)
async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error: %s", exc, exc_info=exc)
    return JSONResponse(status_code=500, content=_failure("N/A", f"Server error: {exc}"))


app.add_middleware(
    CORSMiddleware,
    allow_origins=OCR_CORS_ALLOW_ORIGINS,
    allow_credentials=False,
    allow_methods=OCR_CORS_ALLOW_METHODS,
    allow_headers=OCR_CORS_ALLOW_HEADERS,
)


# -- Body size limit ----------------------------------------------------------


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests with bodies exceeding the size limit."""
    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > OCR_MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content=_failure("N/A", "Request body too large."))
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return await call_next(request)

    # Chunked bodies carry no Content-Length, so count what is actually read.
    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > OCR_MAX_BODY_BYTES:
            logger.warning("Rejected streamed request body over %d bytes", OCR_MAX_BODY_BYTES)
            return JSONResponse(status_code=413, content=_failure("N/A", "Request body too large."))
        chunks.append(chunk)
    # Cached the same way Request.body() caches it, so call_next replays it downstream.
    request._body = b"".join(chunks)  # type: ignore[attr-defined]
    return await call_next(request)


# -- Security headers ---------------------------------------------------------

_SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'self'; object-src 'none'",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Set hardening headers on every response."""
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


# -- Request counter ----------------------------------------------------------

_request_counter = itertools.count(1)


@app.middleware("http")
async def request_counter_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Log every 100th request as a cheap load indicator."""
    count = next(_request_counter)
    if count % 100 == 0:
        logger.info("Request count: %d", count)
    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


def _get_services(request: Request) -> OcrServices:
    """Dependency: services built by the lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


# -- Health -------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", uptime=round(time.monotonic() - _STARTED_AT, 3))


@app.get("/readiness", response_model=HealthResponse)
async def readiness(services: Annotated[OcrServices, Depends(_get_services)]) -> JSONResponse:
    try:
        identities = await services.credentials.list_identities()
    except NoCredentialsAvailable as e:
        body = HealthResponse(status="unavailable", error=str(e))
        return JSONResponse(status_code=503, content=body.model_dump(exclude_none=True))
    body = HealthResponse(status="ok", identities=len(identities))
    return JSONResponse(status_code=200, content=body.model_dump(exclude_none=True))


# -- OCR ----------------------------------------------------------------------

router = APIRouter(tags=["ocr"])


@router.post("/base64", response_model=None)
@limiter.limit(OCR_RATE_LIMIT)
async def ocr_base64(
    request: Request,
    body: Annotated[OcrBase64Request | list[OcrBase64Request], Body()],
    services: Annotated[OcrServices, Depends(_get_services)],
) -> JSONResponse:
    """OCR one base64 image (array response) or a batch (meta + results)."""
    if isinstance(body, list):
        try:
            outcome = await services.batch.process_batch([s.to_submission() for s in body])
        except Exception as e:
            logger.error("Error processing batch of images: %s", e, exc_info=e)
            return JSONResponse(status_code=500, content=_failure("batch-processing", f"Server error: {e}"))
        if not body:
            return JSONResponse(status_code=400, content=_dump(outcome.results))
        return JSONResponse(
            status_code=200,
            content=BatchResponse.from_outcome(outcome).model_dump(by_alias=True),
        )

    file_name = body.original_file_name or "N/A"
    try:
        item = services.batch.decode(body.to_submission())
    except ValidationFailed as e:
        return JSONResponse(status_code=400, content=_failure(file_name, str(e)))

    logger.info("Processing image: %s, Size: %d bytes", item.file_name, len(item.payload))
    try:
        result = await services.batch.process_one(item)
    except Exception as e:
        logger.error("Error processing image %s: %s", file_name, e, exc_info=e)
        return JSONResponse(status_code=500, content=_failure(file_name, f"Server error: {e}"))
    return JSONResponse(status_code=200, content=_dump([result]))


@router.post("/upload", response_model=None)
@limiter.limit(OCR_RATE_LIMIT)
async def ocr_upload(
    request: Request,
    services: Annotated[OcrServices, Depends(_get_services)],
    images: Annotated[list[UploadFile] | None, File()] = None,
) -> JSONResponse:
    """OCR the first uploaded file."""
    if not images:
        return JSONResponse(status_code=400, content=_failure("N/A", "No files uploaded."))

    upload = images[0]
    file_name = upload.filename or "upload"
    if upload.content_type not in OCR_ALLOWED_UPLOAD_TYPES:
        return JSONResponse(
            status_code=400,
            content=_failure(file_name, "Invalid file type. Only images and PDFs are allowed."),
        )

    max_bytes = services.batch.max_payload_bytes
    payload = await upload.read(max_bytes + 1)
    if len(payload) > max_bytes:
        return JSONResponse(
            status_code=400,
            content=_failure(file_name, f"File exceeds {max_bytes // (1024 * 1024)}MB size limit."),
        )
    if not payload:
        return JSONResponse(status_code=400, content=_failure(file_name, "Uploaded file is empty."))

    logger.info(
        "Processing uploaded file: %s, Size: %d bytes, Type: %s",
        file_name,
        len(payload),
        upload.content_type,
    )
    started = time.perf_counter()
    try:
        result = await services.batch.process_one(
            WorkItem(payload=payload, file_name=file_name, mime_type=upload.content_type)
        )
    except Exception as e:
        logger.error("Error processing uploaded file %s: %s", file_name, e, exc_info=e)
        return JSONResponse(status_code=500, content=_failure(file_name, f"Server error: {e}"))
    result.timing["total_duration"] = time.perf_counter() - started
    return JSONResponse(status_code=200, content=_dump([result]))


app.include_router(router, prefix="/ocr")
app.include_router(router, prefix="/api/ocr")
