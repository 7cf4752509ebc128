"""Pydantic request/response schemas for the OCR API.

Field names on the wire are camelCase (``fileName``, ``imageBase64``) to stay
compatible with existing web and PHP clients.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from drive_ocr.batch import Submission
from drive_ocr.types import BatchOutcome, OcrResult

# -- OCR ----------------------------------------------------------------------


class OcrBase64Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Optional here so a missing field becomes a per-item failure, not a 400
    # for the whole batch.
    image_base64: str | None = Field(
        None, alias="imageBase64", description="Data URI or raw base64 payload"
    )
    original_file_name: str | None = Field(None, alias="originalFileName")

    def to_submission(self) -> Submission:
        return Submission(
            image_base64=self.image_base64,
            original_file_name=self.original_file_name,
        )


class OcrResultResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    success: bool
    text: str = ""
    error: str = ""
    timing: dict[str, float] = Field(default_factory=dict)
    credential_used: str = Field("unknown", alias="credentialUsed")

    @classmethod
    def from_result(cls, result: OcrResult) -> OcrResultResponse:
        return cls(
            file_name=result.file_name,
            success=result.success,
            text=result.text,
            error=result.error,
            timing=dict(result.timing),
            credential_used=result.credential_used,
        )


class BatchMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    processed_count: int = Field(alias="processedCount")
    batch_processing_time: float = Field(alias="batchProcessingTime")


class BatchResponse(BaseModel):
    meta: BatchMeta
    results: list[OcrResultResponse]

    @classmethod
    def from_outcome(cls, outcome: BatchOutcome) -> BatchResponse:
        return cls(
            meta=BatchMeta(
                processed_count=outcome.count,
                batch_processing_time=outcome.total_duration,
            ),
            results=[OcrResultResponse.from_result(r) for r in outcome.results],
        )


# -- Health -------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    uptime: float | None = None
    identities: int | None = None
    error: str | None = None
