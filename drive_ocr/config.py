"""Environment-variable-driven configuration for the Drive OCR broker.

All config comes from env vars; values are read once at import time.
"""

from __future__ import annotations

import os
import tempfile


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# -- Credentials --------------------------------------------------------------
GOOGLE_CREDENTIALS_ENV: str = "GOOGLE_CREDENTIALS"
OCR_CREDENTIALS_DIR: str = os.getenv("OCR_CREDENTIALS_DIR", "secure_files")
OCR_TEMP_CREDENTIALS_DIR: str = os.getenv(
    "OCR_TEMP_CREDENTIALS_DIR",
    os.path.join(tempfile.gettempdir(), "ocr-api-credentials"),
)

# -- Google endpoints ---------------------------------------------------------
OCR_TOKEN_URI: str = os.getenv("OCR_TOKEN_URI", "https://oauth2.googleapis.com/token")
OCR_DRIVE_SCOPE: str = os.getenv("OCR_DRIVE_SCOPE", "https://www.googleapis.com/auth/drive")
OCR_DRIVE_API_URL: str = os.getenv("OCR_DRIVE_API_URL", "https://www.googleapis.com/drive/v3")
OCR_DRIVE_UPLOAD_URL: str = os.getenv(
    "OCR_DRIVE_UPLOAD_URL", "https://www.googleapis.com/upload/drive/v3"
)

# -- Tokens / sessions --------------------------------------------------------
OCR_ASSERTION_LIFETIME_SECONDS: int = 3600
OCR_TOKEN_CACHE_TTL_SECONDS: int = int(os.getenv("OCR_TOKEN_CACHE_TTL_SECONDS", "2700"))
OCR_TOKEN_CACHE_MAX: int = int(os.getenv("OCR_TOKEN_CACHE_MAX", "20"))
OCR_SESSION_POOL_MAX: int = int(os.getenv("OCR_SESSION_POOL_MAX", "20"))
OCR_PREWARM_TOKENS: bool = _env_bool("OCR_PREWARM_TOKENS", True)

# -- HTTP client --------------------------------------------------------------
OCR_HTTP_TIMEOUT_SECONDS: float = float(os.getenv("OCR_HTTP_TIMEOUT_SECONDS", "30"))
OCR_HTTP_MAX_CONNECTIONS: int = int(os.getenv("OCR_HTTP_MAX_CONNECTIONS", "100"))

# -- Payload limits -----------------------------------------------------------
OCR_MAX_PAYLOAD_BYTES: int = int(os.getenv("OCR_MAX_PAYLOAD_BYTES", str(5 * 1024 * 1024)))
OCR_MAX_BODY_BYTES: int = int(os.getenv("OCR_MAX_BODY_BYTES", str(50 * 1024 * 1024)))
OCR_BATCH_MAX_CONCURRENCY: int = int(os.getenv("OCR_BATCH_MAX_CONCURRENCY", "32"))
OCR_ALLOWED_UPLOAD_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/bmp",
        "image/webp",
        "application/pdf",
    }
)

# -- Rate limiting ------------------------------------------------------------
OCR_RATE_LIMIT_ENABLED: bool = _env_bool("OCR_RATE_LIMIT_ENABLED", False)
OCR_RATE_LIMIT: str = os.getenv("OCR_RATE_LIMIT", "600/minute")

# -- CORS ---------------------------------------------------------------------
OCR_CORS_ALLOW_ORIGINS: list[str] = _env_csv("OCR_CORS_ALLOW_ORIGINS", "*")
OCR_CORS_ALLOW_METHODS: list[str] = _env_csv("OCR_CORS_ALLOW_METHODS", "GET,POST,OPTIONS")
OCR_CORS_ALLOW_HEADERS: list[str] = _env_csv(
    "OCR_CORS_ALLOW_HEADERS", "Authorization,Content-Type"
)

# -- Logging ------------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
OCR_LOG_DIR: str | None = os.getenv("OCR_LOG_DIR")

# -- Server -------------------------------------------------------------------
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "5000"))
IS_CLOUD_RUN: bool = bool(os.getenv("K_SERVICE"))
