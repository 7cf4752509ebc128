from __future__ import annotations

import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import uvicorn

from drive_ocr.cli import build_parser
from drive_ocr.credentials import is_credential_file_name
from drive_ocr.logging_config import setup_logging

logger = logging.getLogger("drive_ocr")


def combine_credentials(directory: Path) -> list[dict[str, Any]]:
    """Read every credentials*.json in ``directory`` into one list.

    Unreadable files are reported on stderr and skipped.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Credential directory {directory} does not exist")

    combined: list[dict[str, Any]] = []
    for path in sorted(directory.iterdir()):
        if not is_credential_file_name(path.name):
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            print(f"Error reading {path}: {e}", file=sys.stderr)
            continue
        if not isinstance(data, dict):
            print(f"Skipping {path}: not a JSON object", file=sys.stderr)
            continue
        combined.append(data)
    return combined


def _serve(args: Any) -> int:
    setup_logging(level=args.log_level.upper())
    uvicorn.run(
        "drive_ocr.app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


def _combine(args: Any) -> int:
    try:
        combined = combine_credentials(Path(args.dir))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    if not combined:
        print(f"No credentials*.json files found in {args.dir}", file=sys.stderr)
        return 1
    print(json.dumps(combined, indent=args.indent))
    print(f"Combined {len(combined)} credential files", file=sys.stderr)
    return 0


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _serve(args)
    return _combine(args)


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
