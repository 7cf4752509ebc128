"""One OCR request: acquire -> upload-and-convert -> export -> delete -> release.

``OcrPipeline.process`` never raises. Every failure ends up in the result's
``error`` field, and the temporary Google Doc is deleted whenever its id was
obtained, whatever happened during export.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from drive_ocr.errors import (
    AuthenticationFailed,
    CleanupFailed,
    ExportFailed,
    NoCredentialsAvailable,
    TransportError,
    UploadFailed,
)
from drive_ocr.rotator import IdentityRotator, Session
from drive_ocr.types import (
    PHASE_AUTH,
    PHASE_DELETE,
    PHASE_EXPORT,
    PHASE_TOTAL,
    PHASE_UPLOAD,
    OcrResult,
    WorkItem,
)

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_file_name(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", name)


def document_name(original_file_name: str, *, now_ms: int) -> str:
    """Remote-visible name for the temporary Doc."""
    return f"ocr_direct_{sanitize_file_name(original_file_name)}_{now_ms}"


def _rejected_token(exc: Exception) -> bool:
    return getattr(exc, "status_code", None) == 401


class OcrPipeline:
    def __init__(
        self,
        rotator: IdentityRotator,
        *,
        timer: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._rotator = rotator
        self._timer = timer
        self._wall_clock = wall_clock

    async def process(self, item: WorkItem) -> OcrResult:
        result = OcrResult(file_name=item.file_name)
        started = self._timer()
        try:
            await self._run(item, result, started)
        except Exception as e:
            logger.exception("Unexpected OCR failure for %s", item.file_name)
            result.success = False
            result.text = ""
            result.add_error(f"Processing Error: {e}")
        result.timing[PHASE_TOTAL] = self._timer() - started

        if result.success:
            logger.info(
                "OCR complete for %s via credential %s in %.2fs",
                item.file_name,
                result.credential_used,
                result.timing[PHASE_TOTAL],
            )
        return result

    async def _run(self, item: WorkItem, result: OcrResult, started: float) -> None:
        try:
            session = await self._rotator.acquire_session()
        except (NoCredentialsAvailable, AuthenticationFailed) as e:
            result.timing[PHASE_AUTH] = self._timer() - started
            result.credential_used = getattr(e, "label", None) or result.credential_used
            logger.error("Authentication failed for %s: %s", item.file_name, e)
            result.add_error(f"Authentication Error: {e}")
            return
        result.timing[PHASE_AUTH] = self._timer() - started
        result.credential_used = session.identity.label

        healthy = True
        file_id: str | None = None
        try:
            file_id, healthy = await self._upload(session, item, result)
            if file_id is not None:
                healthy = await self._export(session, file_id, item, result) and healthy
        finally:
            try:
                if file_id is not None:
                    healthy = await self._cleanup(session, file_id, result) and healthy
            finally:
                self._rotator.release(session, healthy=healthy)

    async def _upload(self, session: Session, item: WorkItem, result: OcrResult) -> tuple[str | None, bool]:
        phase_start = self._timer()
        name = document_name(item.file_name, now_ms=int(self._wall_clock() * 1000))
        try:
            file_id = await session.client.create_google_doc(name, item.payload, item.mime_type)
        except (UploadFailed, TransportError) as e:
            logger.error("Upload failed for %s: %s", item.file_name, e)
            result.add_error(f"Upload Error: {e}")
            return None, not _rejected_token(e)
        finally:
            result.timing[PHASE_UPLOAD] = self._timer() - phase_start
        return file_id, True

    async def _export(self, session: Session, file_id: str, item: WorkItem, result: OcrResult) -> bool:
        phase_start = self._timer()
        try:
            text = await session.client.export_text(file_id)
        except (ExportFailed, TransportError) as e:
            logger.error("Export failed for %s (doc %s): %s", item.file_name, file_id, e)
            result.add_error(f"Export Error: {e}")
            return not _rejected_token(e)
        finally:
            result.timing[PHASE_EXPORT] = self._timer() - phase_start
        result.success = True
        result.text = text
        return True

    async def _cleanup(self, session: Session, file_id: str, result: OcrResult) -> bool:
        phase_start = self._timer()
        try:
            await session.client.delete(file_id)
        except (CleanupFailed, TransportError) as e:
            # The Doc is now orphaned in the service account's Drive.
            logger.error("Failed to delete temp doc %s, artifact leaked: %s", file_id, e)
            result.add_error(f"Cleanup Error: {e}")
            return not _rejected_token(e)
        except Exception as e:
            logger.exception("Failed to delete temp doc %s, artifact leaked", file_id)
            result.add_error(f"Cleanup Error: {e}")
            return True
        finally:
            result.timing[PHASE_DELETE] = self._timer() - phase_start
        return True
