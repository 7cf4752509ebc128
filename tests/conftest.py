"""Shared test fixtures for the drive-ocr test suite.

``FakeGoogle`` stands in for the OAuth token endpoint and the Drive v3 API
behind an ``httpx.MockTransport``; every call is recorded so tests can assert
on exactly what went over the wire.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from google.auth import jwt

from drive_ocr.credentials import parse_identity
from drive_ocr.transport import build_http_client
from drive_ocr.types import Identity

TOKEN_URI = "https://oauth2.googleapis.com/token"


@pytest.fixture(scope="session")
def private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def make_service_account(private_key_pem: str) -> Callable[..., dict[str, Any]]:
    def _make(email: str = "ocr-1@project.iam.gserviceaccount.com", **overrides: Any) -> dict[str, Any]:
        info = {
            "type": "service_account",
            "project_id": "project",
            "private_key_id": f"kid-{email.split('@')[0]}",
            "private_key": private_key_pem,
            "client_email": email,
            "token_uri": TOKEN_URI,
        }
        info.update(overrides)
        return info

    return _make


@dataclass
class Call:
    method: str
    url: httpx.URL
    headers: httpx.Headers
    body: bytes


@dataclass
class FakeGoogle:
    """Scriptable token endpoint + Drive API."""

    export_text: str = "\ufeffHello from Drive"
    token_status: int = 200
    token_expires_in: int = 3600
    upload_status: int = 200
    upload_returns_id: bool = True
    export_status: int = 200
    delete_status: int = 204
    delay: float = 0.0
    raise_on: str | None = None  # "token" | "upload" | "export" | "delete"
    calls: list[Call] = field(default_factory=list)
    docs: dict[str, bytes] = field(default_factory=dict)
    minted_for: list[str] = field(default_factory=list)
    _counter: int = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def calls_to(self, kind: str) -> list[Call]:
        return [c for c in self.calls if _classify(c.method, c.url) == kind]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        self.calls.append(Call(request.method, request.url, request.headers, body))
        kind = _classify(request.method, request.url)
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if self.raise_on == kind:
            raise httpx.ConnectError("connection refused", request=request)

        if kind == "token":
            return self._token(body)
        if kind == "upload":
            return self._upload(body)
        if kind == "export":
            return self._export(request.url)
        if kind == "delete":
            return self._delete(request.url)
        return httpx.Response(404, json={"error": {"message": "Not Found"}})

    def _token(self, body: bytes) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(
                self.token_status,
                json={"error": "invalid_grant", "error_description": "Invalid JWT Signature."},
            )
        form = dict(httpx.QueryParams(body.decode()))
        claims = jwt.decode(form["assertion"], verify=False)
        self.minted_for.append(claims["iss"])
        return httpx.Response(
            200,
            json={
                "access_token": f"tok-{self._next()}",
                "expires_in": self.token_expires_in,
                "token_type": "Bearer",
            },
        )

    def _upload(self, body: bytes) -> httpx.Response:
        if self.upload_status >= 400:
            return httpx.Response(
                self.upload_status,
                json={"error": {"code": self.upload_status, "message": "Upload rejected"}},
            )
        if not self.upload_returns_id:
            return httpx.Response(200, json={"kind": "drive#file"})
        doc_id = f"doc-{self._next()}"
        self.docs[doc_id] = body
        return httpx.Response(200, json={"id": doc_id, "name": _metadata_name(body)})

    def _export(self, url: httpx.URL) -> httpx.Response:
        if self.export_status >= 400:
            return httpx.Response(
                self.export_status,
                json={"error": {"code": self.export_status, "message": "Export only supports Docs Editors files."}},
            )
        return httpx.Response(200, content=self.export_text.encode("utf-8"))

    def _delete(self, url: httpx.URL) -> httpx.Response:
        doc_id = url.path.rsplit("/", 1)[-1]
        if self.delete_status >= 400:
            return httpx.Response(
                self.delete_status,
                json={"error": {"code": self.delete_status, "message": "Delete rejected"}},
            )
        self.docs.pop(doc_id, None)
        return httpx.Response(self.delete_status)


def _classify(method: str, url: httpx.URL) -> str:
    path = url.path
    if url.host == "oauth2.googleapis.com":
        return "token"
    if method == "POST" and path.startswith("/upload/drive/v3/files"):
        return "upload"
    if method == "GET" and path.endswith("/export"):
        return "export"
    if method == "DELETE" and path.startswith("/drive/v3/files/"):
        return "delete"
    return "other"


def _metadata_name(body: bytes) -> str | None:
    """Pull the ``name`` out of the JSON part of a multipart/related body."""
    for part in body.split(b"\r\n"):
        if part.startswith(b"{"):
            return json.loads(part).get("name")
    return None


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(fake_google: FakeGoogle) -> AsyncIterator[httpx.AsyncClient]:
    client = build_http_client(transport=httpx.MockTransport(fake_google.handler))
    yield client
    await client.aclose()


@pytest.fixture(scope="session")
def make_identity(make_service_account: Callable[..., dict[str, Any]]) -> Callable[..., Identity]:
    def _make(email: str = "ocr-1@project.iam.gserviceaccount.com", label: str = "1") -> Identity:
        return parse_identity(make_service_account(email), label=label, source=f"test[{label}]")

    return _make
