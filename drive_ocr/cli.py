from __future__ import annotations

import argparse

from drive_ocr.config import HOST, LOG_LEVEL, OCR_CREDENTIALS_DIR, PORT


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="drive-ocr",
        description="OCR broker that converts images to text through Google Drive",
    )
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=HOST, help="Bind address (default from env HOST)")
    serve.add_argument("--port", type=int, default=PORT, help="Bind port (default from env PORT)")
    serve.add_argument("--log-level", default=LOG_LEVEL, help="Python logging level (INFO, DEBUG, ...)")

    combine = sub.add_parser(
        "combine-credentials",
        help="Print credentials*.json files as one GOOGLE_CREDENTIALS JSON array",
    )
    combine.add_argument(
        "--dir",
        default=OCR_CREDENTIALS_DIR,
        help="Directory holding credentials*.json (default from env OCR_CREDENTIALS_DIR)",
    )
    combine.add_argument("--indent", type=int, default=None, help="Pretty-print with this indent")
    return p
