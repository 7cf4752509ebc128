"""Minimal Drive v3 client for OCR-by-conversion.

- ``create_google_doc``: multipart upload that converts the payload into a
  Google Doc (Drive runs OCR on images and PDFs during conversion)
- ``export_text``: export the Doc as ``text/plain``
- ``delete``: remove the temporary Doc
"""

from __future__ import annotations

import json
import logging
import secrets

import httpx

from drive_ocr.config import OCR_DRIVE_API_URL, OCR_DRIVE_UPLOAD_URL
from drive_ocr.errors import CleanupFailed, ExportFailed, UploadFailed
from drive_ocr.transport import describe_status, error_detail, send

logger = logging.getLogger(__name__)

GOOGLE_DOC_MIME_TYPE = "application/vnd.google-apps.document"


def build_multipart_related(
    metadata: dict[str, str],
    payload: bytes,
    mime_type: str,
    *,
    boundary: str | None = None,
) -> tuple[bytes, str]:
    """Build a ``multipart/related`` body; returns (body, content_type)."""
    boundary = boundary or f"-------{secrets.token_hex(12)}"
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--".encode()
    return head + payload + tail, f"multipart/related; boundary={boundary}"


class DriveClient:
    """Drive calls bound to one access token."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        *,
        api_url: str = OCR_DRIVE_API_URL,
        upload_url: str = OCR_DRIVE_UPLOAD_URL,
    ) -> None:
        self._http = http
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._api_url = api_url.rstrip("/")
        self._upload_url = upload_url.rstrip("/")

    async def create_google_doc(self, name: str, payload: bytes, mime_type: str) -> str:
        """Upload *payload* and convert it to a Google Doc; returns the file id."""
        body, content_type = build_multipart_related(
            {"name": name, "mimeType": GOOGLE_DOC_MIME_TYPE},
            payload,
            mime_type,
        )
        resp = await send(
            self._http,
            "POST",
            f"{self._upload_url}/files",
            params={"uploadType": "multipart"},
            content=body,
            headers={**self._headers, "Content-Type": content_type},
        )
        if resp.status_code >= 400:
            raise UploadFailed(describe_status(resp), status_code=resp.status_code, detail=error_detail(resp))

        try:
            file_id = resp.json().get("id")
        except (ValueError, AttributeError) as e:
            raise UploadFailed("Upload response was not a JSON object") from e
        if not file_id:
            raise UploadFailed("Failed to get document ID from upload response")
        return str(file_id)

    async def export_text(self, file_id: str) -> str:
        resp = await send(
            self._http,
            "GET",
            f"{self._api_url}/files/{file_id}/export",
            params={"mimeType": "text/plain"},
            headers=self._headers,
        )
        if resp.status_code >= 400:
            raise ExportFailed(describe_status(resp), status_code=resp.status_code, detail=error_detail(resp))
        # Docs exports start with a UTF-8 BOM.
        return resp.text.removeprefix("\ufeff")

    async def delete(self, file_id: str) -> None:
        resp = await send(
            self._http,
            "DELETE",
            f"{self._api_url}/files/{file_id}",
            headers=self._headers,
        )
        # 404 means somebody else already removed it.
        if resp.status_code >= 400 and resp.status_code != 404:
            raise CleanupFailed(describe_status(resp), status_code=resp.status_code, detail=error_detail(resp))
