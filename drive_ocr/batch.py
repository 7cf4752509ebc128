"""Batch fan-out: validate submissions, run pipelines concurrently, aggregate.

Validation happens before any remote call; an invalid item becomes a failed
result on its own and never affects its siblings.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from drive_ocr.config import OCR_BATCH_MAX_CONCURRENCY, OCR_MAX_PAYLOAD_BYTES
from drive_ocr.errors import ValidationFailed
from drive_ocr.pipeline import OcrPipeline
from drive_ocr.types import BatchOutcome, OcrResult, WorkItem

logger = logging.getLogger(__name__)

ITEM_DURATION = "item_duration"
DEFAULT_MIME_TYPE = "application/octet-stream"

_DATA_URI = re.compile(r"^data:(image/[\w.+-]+|application/pdf);base64,(.*)$", re.DOTALL)
_WHITESPACE = re.compile(r"\s+")

_MAGIC_NUMBERS: list[tuple[bytes, str]] = [
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"BM", "image/bmp"),
]


@dataclass(frozen=True)
class Submission:
    """One caller-supplied item before validation."""

    image_base64: str | None
    original_file_name: str | None


def sniff_mime_type(payload: bytes) -> str:
    """Best-effort MIME type from magic bytes."""
    if payload[:4] == b"RIFF" and payload[8:12] == b"WEBP":
        return "image/webp"
    for magic, mime_type in _MAGIC_NUMBERS:
        if payload.startswith(magic):
            return mime_type
    return DEFAULT_MIME_TYPE


def _b64decode(data: str, *, message: str) -> bytes:
    cleaned = _WHITESPACE.sub("", data)
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationFailed(message) from e


def _format_megabytes(size: int) -> str:
    return f"{size / (1024 * 1024):g}MB"


def decode_submission(submission: Submission, *, max_bytes: int = OCR_MAX_PAYLOAD_BYTES) -> WorkItem:
    """Validate and decode one submission; raises ValidationFailed."""
    image_base64 = submission.image_base64
    file_name = submission.original_file_name
    if not image_base64 or not file_name:
        raise ValidationFailed("Missing required fields: imageBase64 and/or originalFileName.")

    if image_base64.startswith("data:"):
        match = _DATA_URI.match(image_base64)
        if match is None:
            raise ValidationFailed("Invalid base64 image format.")
        mime_type = match.group(1)
        payload = _b64decode(match.group(2), message="Invalid base64 image format.")
    else:
        payload = _b64decode(image_base64, message="Invalid base64 data.")
        mime_type = sniff_mime_type(payload)

    if not payload:
        raise ValidationFailed("Decoded image is empty.")
    if len(payload) > max_bytes:
        raise ValidationFailed(
            f"Decoded image exceeds maximum size of {_format_megabytes(max_bytes)}. "
            f"Size: {len(payload)} bytes."
        )
    return WorkItem(payload=payload, file_name=file_name, mime_type=mime_type)


class BatchController:
    def __init__(
        self,
        pipeline: OcrPipeline,
        *,
        max_payload_bytes: int = OCR_MAX_PAYLOAD_BYTES,
        max_concurrency: int = OCR_BATCH_MAX_CONCURRENCY,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._pipeline = pipeline
        self.max_payload_bytes = max_payload_bytes
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._timer = timer

    def decode(self, submission: Submission) -> WorkItem:
        return decode_submission(submission, max_bytes=self.max_payload_bytes)

    async def process_one(self, item: WorkItem) -> OcrResult:
        """Run one validated item through the pipeline."""
        item_start = self._timer()
        async with self._semaphore:
            try:
                result = await self._pipeline.process(item)
            except Exception as e:
                logger.exception("Error in OCR for %s", item.file_name)
                result = OcrResult(file_name=item.file_name, error=f"OCR processing error: {e}")
        result.timing[ITEM_DURATION] = self._timer() - item_start
        return result

    async def process_batch(self, submissions: Sequence[Submission]) -> BatchOutcome:
        started = self._timer()
        if not submissions:
            failure = OcrResult(file_name="N/A", error="No image data provided.")
            return BatchOutcome(results=[failure], count=1, total_duration=self._timer() - started)

        async def _handle(submission: Submission) -> OcrResult:
            item_start = self._timer()
            try:
                item = self.decode(submission)
            except ValidationFailed as e:
                result = OcrResult(file_name=submission.original_file_name or "N/A", error=str(e))
                result.timing[ITEM_DURATION] = self._timer() - item_start
                return result
            logger.info("Processing image: %s, Size: %d bytes", item.file_name, len(item.payload))
            return await self.process_one(item)

        results = list(await asyncio.gather(*(_handle(s) for s in submissions)))
        total = self._timer() - started
        logger.info("Batch processing complete. Processed %d images in %.2fs", len(results), total)
        return BatchOutcome(results=results, count=len(results), total_duration=total)
