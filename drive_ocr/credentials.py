"""Service-account credential resolution.

Two sources, picked once at startup:
1. ``GOOGLE_CREDENTIALS`` env var: a JSON array of service-account records.
   Each record is also written to an ephemeral file (for consumers that want
   file-backed secrets); those files are removed once a token has been minted,
   at shutdown, or on SIGINT/SIGTERM, whichever comes first.
2. A local directory of ``credentials*.json`` files (local dev fallback).

Malformed entries are skipped with a warning. Only when nothing usable is
left does ``list_identities()`` raise ``NoCredentialsAvailable``.
"""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import aiofiles.os
from google.auth import crypt

from drive_ocr.config import (
    GOOGLE_CREDENTIALS_ENV,
    OCR_CREDENTIALS_DIR,
    OCR_TEMP_CREDENTIALS_DIR,
    OCR_TOKEN_URI,
)
from drive_ocr.errors import NoCredentialsAvailable
from drive_ocr.types import Identity

logger = logging.getLogger(__name__)

_LABEL_PATTERN = re.compile(
    r"credentials(\d+|zero|one|two|three|four|five|six|seven|eight|nine)\.json$"
)


def is_credential_file_name(name: str) -> bool:
    return name.startswith("credentials") and name.endswith(".json")


def label_for_file(name: str) -> str:
    """``credentials3.json`` -> ``"3"``; anything else -> the file stem."""
    match = _LABEL_PATTERN.search(name)
    if match:
        return match.group(1)
    return Path(name).stem


def parse_identity(info: Any, *, label: str, source: str) -> Identity:
    """Validate one service-account record and build an Identity.

    Raises ValueError if the record is unusable (missing fields or a private
    key that cannot be loaded).
    """
    if not isinstance(info, Mapping):
        raise ValueError("credential entry is not a JSON object")

    principal = info.get("client_email")
    private_key = info.get("private_key")
    if not isinstance(principal, str) or not principal.strip():
        raise ValueError("credential entry missing client_email")
    if not isinstance(private_key, str) or not private_key.strip():
        raise ValueError("credential entry missing private_key")

    key_id = info.get("private_key_id")
    key_id = key_id if isinstance(key_id, str) and key_id else None
    try:
        crypt.RSASigner.from_string(private_key, key_id)
    except (ValueError, TypeError) as e:
        raise ValueError(f"private_key for {principal} could not be loaded") from e

    token_uri = info.get("token_uri")
    return Identity(
        principal=principal.strip(),
        private_key=private_key,
        private_key_id=key_id,
        token_uri=token_uri if isinstance(token_uri, str) and token_uri else OCR_TOKEN_URI,
        label=label,
        source=source,
    )


# -- Ephemeral files ----------------------------------------------------------


class EphemeralFiles:
    """Tracks materialized credential files so they can be removed later.

    ``cleanup_sync`` is safe to call any number of times, from any thread,
    including from atexit and signal handlers.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._paths: set[Path] = set()
        self._lock = threading.Lock()

    def track(self, path: Path) -> None:
        with self._lock:
            self._paths.add(path)

    @property
    def pending(self) -> bool:
        return bool(self._paths)

    @property
    def paths(self) -> frozenset[Path]:
        return frozenset(self._paths)

    def cleanup_sync(self) -> None:
        with self._lock:
            for path in sorted(self._paths):
                try:
                    path.unlink(missing_ok=True)
                    self._paths.discard(path)
                except OSError as e:
                    logger.error("Failed to delete temp credential file %s: %s", path, e)
            if not self._paths:
                try:
                    self.directory.rmdir()
                except OSError:
                    # Not empty or already gone.
                    pass

    async def cleanup(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.cleanup_sync)


class ShutdownHook:
    """Runs a callback at most once on normal exit, SIGINT or SIGTERM.

    Previously installed signal handlers still run after the callback.
    Failures inside the callback are logged and never propagate into the
    interrupted shutdown path.
    """

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._registered = False
        self._ran = False
        self._lock = threading.Lock()
        self._previous: dict[int, Any] = {}

    @property
    def ran(self) -> bool:
        return self._ran

    def register(self) -> None:
        if self._registered:
            return
        self._registered = True
        atexit.register(self.run)

        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on main thread; relying on atexit only")
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle_signal)

    def run(self) -> None:
        with self._lock:
            if self._ran:
                return
            self._ran = True
        try:
            self._callback()
        except Exception:
            logger.exception("Shutdown cleanup failed")

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.run()
        previous = self._previous.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)


# -- Strategies ---------------------------------------------------------------


class CredentialStrategy(Protocol):
    name: str

    async def load(self) -> list[Identity]: ...


class EnvBundleStrategy:
    """Identities from a JSON array held in an environment variable."""

    name = "env-bundle"

    def __init__(self, raw: str, *, ephemeral: EphemeralFiles) -> None:
        self._raw = raw
        self._ephemeral = ephemeral

    async def load(self) -> list[Identity]:
        try:
            data = json.loads(self._raw)
        except json.JSONDecodeError as e:
            logger.error("Error processing %s env var: %s", GOOGLE_CREDENTIALS_ENV, e)
            return []

        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            logger.error("%s must hold a JSON array of credential objects", GOOGLE_CREDENTIALS_ENV)
            return []

        directory = self._ephemeral.directory
        await aiofiles.os.makedirs(directory, exist_ok=True)

        identities: list[Identity] = []
        for i, entry in enumerate(data, start=1):
            path = directory / f"credentials{i}.json"
            try:
                identity = parse_identity(entry, label=str(i), source=str(path))
            except ValueError as e:
                logger.warning("Skipping credential entry %d from %s: %s", i, GOOGLE_CREDENTIALS_ENV, e)
                continue

            try:
                await self._materialize(path, entry)
            except OSError as e:
                logger.warning("Could not write temp credential file %s: %s", path, e)
            identities.append(identity)

        logger.info(
            "Loaded %d credentials from %s (%d temp files in %s)",
            len(identities),
            GOOGLE_CREDENTIALS_ENV,
            len(self._ephemeral.paths),
            directory,
        )
        return identities

    async def _materialize(self, path: Path, entry: Mapping[str, Any]) -> None:
        # Track before writing so a partially written file is still removed.
        self._ephemeral.track(path)
        async with aiofiles.open(
            path,
            "w",
            encoding="utf-8",
            opener=lambda p, flags: os.open(p, flags, 0o600),
        ) as fh:
            await fh.write(json.dumps(entry))


class DirectoryStrategy:
    """Identities from ``credentials*.json`` files in a local directory."""

    name = "directory"

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    async def load(self) -> list[Identity]:
        if not await aiofiles.os.path.isdir(self._directory):
            logger.warning("Credential directory %s does not exist", self._directory)
            return []

        names = sorted(n for n in await aiofiles.os.listdir(self._directory) if is_credential_file_name(n))
        identities: list[Identity] = []
        for name in names:
            path = self._directory / name
            try:
                async with aiofiles.open(path, encoding="utf-8") as fh:
                    info = json.loads(await fh.read())
                identities.append(parse_identity(info, label=label_for_file(name), source=str(path)))
            except (OSError, ValueError) as e:
                logger.warning("Skipping credential file %s: %s", path, e)

        logger.info("Loaded %d credentials from %s", len(identities), self._directory)
        return identities


def resolve_strategies(
    *,
    environ: Mapping[str, str] | None = None,
    credentials_dir: str = OCR_CREDENTIALS_DIR,
    ephemeral: EphemeralFiles,
) -> list[CredentialStrategy]:
    """Pick the strategy order once: env bundle (if set), then the directory."""
    env = os.environ if environ is None else environ
    strategies: list[CredentialStrategy] = []
    raw = env.get(GOOGLE_CREDENTIALS_ENV)
    if raw and raw.strip():
        strategies.append(EnvBundleStrategy(raw, ephemeral=ephemeral))
    strategies.append(DirectoryStrategy(Path(credentials_dir)))
    return strategies


# -- Source -------------------------------------------------------------------


class CredentialSource:
    """Resolves and caches the identities available to this process."""

    def __init__(
        self,
        strategies: Sequence[CredentialStrategy],
        *,
        ephemeral: EphemeralFiles | None = None,
    ) -> None:
        self._strategies = list(strategies)
        self._ephemeral = ephemeral
        self._cache: tuple[Identity, ...] | None = None
        self._lock = asyncio.Lock()

    async def list_identities(self) -> tuple[Identity, ...]:
        if self._cache is not None:
            return self._cache

        async with self._lock:
            if self._cache is not None:
                return self._cache
            for strategy in self._strategies:
                identities = await strategy.load()
                if identities:
                    self._cache = tuple(identities)
                    return self._cache
                logger.warning("Credential strategy %s yielded no usable identities", strategy.name)

        tried = ", ".join(s.name for s in self._strategies) or "none"
        raise NoCredentialsAvailable(f"No usable credentials available (tried: {tried})")

    @property
    def has_ephemeral_files(self) -> bool:
        return self._ephemeral is not None and self._ephemeral.pending

    async def release_ephemeral_files(self) -> None:
        """Best-effort removal of materialized credential files."""
        if self._ephemeral is not None and self._ephemeral.pending:
            await self._ephemeral.cleanup()

    def release_ephemeral_files_sync(self) -> None:
        if self._ephemeral is not None:
            self._ephemeral.cleanup_sync()


def build_credential_source(
    *,
    environ: Mapping[str, str] | None = None,
    credentials_dir: str = OCR_CREDENTIALS_DIR,
    temp_dir: str = OCR_TEMP_CREDENTIALS_DIR,
) -> CredentialSource:
    ephemeral = EphemeralFiles(Path(temp_dir))
    strategies = resolve_strategies(environ=environ, credentials_dir=credentials_dir, ephemeral=ephemeral)
    return CredentialSource(strategies, ephemeral=ephemeral)
