"""Unit tests for drive_ocr.logging_config."""

from __future__ import annotations

import json
import logging

import pytest

from drive_ocr.logging_config import GCPJsonFormatter, generate_request_id, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for h in root.handlers[:]:
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


def test_gcp_formatter_maps_severity():
    formatter = GCPJsonFormatter(fmt="%(message)s %(levelname)s %(name)s")
    record = logging.LogRecord("drive_ocr.pipeline", logging.WARNING, __file__, 1, "leaked %s", ("doc-1",), None)
    payload = json.loads(formatter.format(record))
    assert payload["severity"] == "WARNING"
    assert payload["message"] == "leaked doc-1"
    assert "levelname" not in payload


def test_setup_logging_replaces_handlers(restore_root_logger, monkeypatch):
    monkeypatch.delenv("K_SERVICE", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    setup_logging(level="DEBUG")
    setup_logging(level="DEBUG")
    assert len(restore_root_logger.handlers) == 1
    assert restore_root_logger.level == logging.DEBUG


def test_json_output_on_cloud_run(restore_root_logger, monkeypatch):
    monkeypatch.setenv("K_SERVICE", "drive-ocr")
    setup_logging()
    assert isinstance(restore_root_logger.handlers[0].formatter, GCPJsonFormatter)


def test_log_dir_writes_error_and_combined(restore_root_logger, tmp_path, monkeypatch):
    monkeypatch.delenv("K_SERVICE", raising=False)
    setup_logging(level="INFO", log_dir=str(tmp_path / "logs"))
    log = logging.getLogger("drive_ocr.test")
    log.info("just info")
    log.error("something broke")
    for h in restore_root_logger.handlers:
        h.flush()

    combined = (tmp_path / "logs" / "combined.log").read_text()
    errors = (tmp_path / "logs" / "error.log").read_text()
    assert "just info" in combined and "something broke" in combined
    assert "something broke" in errors
    assert "just info" not in errors


def test_request_ids_are_unique():
    ids = {generate_request_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(i) == 16 for i in ids)
