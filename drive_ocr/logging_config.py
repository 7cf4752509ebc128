"""Logging setup: plain text locally, structured JSON on Cloud Run.

Configures python-json-logger for GCP Cloud Logging severity mapping.
When ``OCR_LOG_DIR`` is set, ``error.log`` and ``combined.log`` are written
there as well.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from pythonjsonlogger.json import JsonFormatter

# GCP severity mapping: Python log levels -> Cloud Logging severity strings
_GCP_SEVERITY = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d  %(message)s"


class GCPJsonFormatter(JsonFormatter):
    """JSON formatter that maps Python log levels to GCP severity."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = _GCP_SEVERITY.get(record.levelname, record.levelname)
        log_record.pop("levelname", None)


def _use_json() -> bool:
    return bool(os.getenv("K_SERVICE")) or os.getenv("LOG_FORMAT", "").lower() == "json"


def _build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return GCPJsonFormatter(
            fmt="%(message)s %(name)s %(funcName)s %(lineno)d",
            rename_fields={"message": "message", "name": "logger"},
        )
    return logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S")


def setup_logging(*, level: str = "INFO", log_dir: str | None = None) -> None:
    """Configure the root logger.

    Existing handlers are replaced so repeated calls (tests, reloads) do not
    duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)
        h.close()

    formatter = _build_formatter(_use_json())

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)

        error_handler = logging.FileHandler(directory / "error.log", encoding="utf-8")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root.addHandler(error_handler)

        combined_handler = logging.FileHandler(directory / "combined.log", encoding="utf-8")
        combined_handler.setFormatter(formatter)
        root.addHandler(combined_handler)


def generate_request_id() -> str:
    """Generate a unique request ID for trace correlation."""
    return uuid.uuid4().hex[:16]
