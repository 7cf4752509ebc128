from __future__ import annotations

from dataclasses import dataclass, field

# Ordered phase labels recorded by the pipeline.
PHASE_AUTH = "auth"
PHASE_UPLOAD = "upload_and_convert"
PHASE_EXPORT = "export"
PHASE_DELETE = "delete"
PHASE_TOTAL = "total"


@dataclass(frozen=True)
class Identity:
    """One service account usable to call Drive."""

    principal: str  # client_email
    private_key: str = field(repr=False)
    private_key_id: str | None
    token_uri: str
    label: str  # reported to callers as credentialUsed
    source: str  # file path or env[i]


@dataclass(frozen=True)
class AccessToken:
    value: str = field(repr=False)
    expires_at: float  # unix timestamp reported by the token endpoint
    principal: str
    # Reuse deadline, earlier than expires_at by the cache TTL policy.
    cache_until: float | None = None

    def is_valid(self, now: float) -> bool:
        deadline = self.expires_at if self.cache_until is None else self.cache_until
        return now < deadline


@dataclass(frozen=True)
class WorkItem:
    payload: bytes = field(repr=False)
    file_name: str
    mime_type: str


@dataclass
class OcrResult:
    file_name: str
    success: bool = False
    text: str = ""
    error: str = ""
    timing: dict[str, float] = field(default_factory=dict)
    credential_used: str = "unknown"

    def add_error(self, message: str) -> None:
        """Append an error, keeping any earlier cause visible."""
        self.error = f"{self.error}; {message}" if self.error else message


@dataclass(frozen=True)
class BatchOutcome:
    results: list[OcrResult]
    count: int
    total_duration: float  # seconds
