"""End-to-end OCR flow: HTTP API -> batch -> pipeline -> rotator -> tokens -> credentials.

Everything is real except the Google endpoints, which FakeGoogle serves
through an httpx mock transport.
"""

from __future__ import annotations

import base64
import json

import pytest
from httpx import ASGITransport, AsyncClient

from drive_ocr.services import build_services

JPEG_10_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture()
def services(tmp_path, http_client, make_service_account):
    environ = {
        "GOOGLE_CREDENTIALS": json.dumps(
            [make_service_account(f"sa{i}@p.iam") for i in range(1, 4)]
        )
    }
    return build_services(
        http=http_client,
        environ=environ,
        credentials_dir=str(tmp_path / "secure_files"),
        temp_dir=str(tmp_path / "ocr-api-credentials"),
        register_shutdown_hook=False,
    )


@pytest.fixture()
async def client(services):
    from drive_ocr.app import app

    app.state.limiter.reset()
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.services


async def test_single_image_end_to_end(client, fake_google):
    assert len(JPEG_10_BYTES) == 10
    resp = await client.post(
        "/ocr/base64",
        json={"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "x.jpg"},
    )

    assert resp.status_code == 200
    (result,) = resp.json()
    assert result["fileName"] == "x.jpg"
    assert result["success"] is True
    for phase in ("auth", "upload_and_convert", "export", "delete", "total"):
        assert result["timing"][phase] >= 0

    kinds = [c for c in ("token", "upload", "export", "delete") if fake_google.calls_to(c)]
    assert kinds == ["token", "upload", "export", "delete"]
    assert fake_google.docs == {}


async def test_sanitized_remote_name(client, fake_google):
    resp = await client.post(
        "/ocr/base64",
        json={"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "a/b .png"},
    )
    (result,) = resp.json()
    assert result["fileName"] == "a/b .png"

    (upload,) = fake_google.calls_to("upload")
    metadata = next(line for line in upload.body.split(b"\r\n") if line.startswith(b"{"))
    name = json.loads(metadata)["name"]
    assert name.startswith("ocr_direct_a_b_.png_")
    assert "/" not in name and " " not in name


async def test_batch_with_invalid_middle_item(client, fake_google):
    resp = await client.post(
        "/ocr/base64",
        json=[
            {"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "1.jpg"},
            {"imageBase64": "data:image/png;base64,@@@", "originalFileName": "2.png"},
            {"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "3.jpg"},
        ],
    )
    assert resp.status_code == 200
    body = resp.json()
    results = {r["fileName"]: r for r in body["results"]}
    assert len(body["results"]) == 3
    assert results["1.jpg"]["success"] and results["3.jpg"]["success"]
    assert results["2.png"]["success"] is False
    assert results["2.png"]["error"] == "Invalid base64 image format."
    # Every artifact that was created was also deleted.
    assert len(fake_google.calls_to("upload")) == len(fake_google.calls_to("delete")) == 2


async def test_size_limit_makes_no_remote_calls(client, services, fake_google):
    services.batch.max_payload_bytes = 9
    resp = await client.post(
        "/ocr/base64",
        json={"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "x.jpg"},
    )
    assert resp.status_code == 400
    assert resp.json()[0]["success"] is False
    assert fake_google.calls == []


async def test_tokens_are_reused_across_requests(client, services, fake_google):
    for _ in range(5):
        resp = await client.post(
            "/ocr/base64",
            json={"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "x.jpg"},
        )
        assert resp.json()[0]["success"] is True
    # Sequential requests reuse the pooled session.
    assert len(fake_google.calls_to("token")) == 1
    assert services.rotator.pool_size == 1


async def test_temp_credential_files_removed_after_first_mint(client, services, tmp_path):
    temp_dir = tmp_path / "ocr-api-credentials"
    await services.credentials.list_identities()
    assert sorted(p.name for p in temp_dir.iterdir()) == [
        "credentials1.json",
        "credentials2.json",
        "credentials3.json",
    ]

    resp = await client.post(
        "/ocr/base64",
        json={"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": "x.jpg"},
    )
    assert resp.json()[0]["success"] is True
    assert not temp_dir.exists()
    assert not services.credentials.has_ephemeral_files


async def test_prewarm_mints_every_identity(services, fake_google):
    assert await services.prewarm() == 3
    assert sorted(fake_google.minted_for) == ["sa1@p.iam", "sa2@p.iam", "sa3@p.iam"]
    assert not services.credentials.has_ephemeral_files


async def test_concurrent_batch_shares_tokens(client, fake_google):
    fake_google.delay = 0.005
    resp = await client.post(
        "/ocr/base64",
        json=[{"imageBase64": _b64(JPEG_10_BYTES), "originalFileName": f"{i}.jpg"} for i in range(12)],
    )
    body = resp.json()
    assert body["meta"]["processedCount"] == 12
    assert all(r["success"] for r in body["results"])
    # At most one exchange per identity thanks to single-flight minting.
    assert len(fake_google.calls_to("token")) <= 3
    assert len(fake_google.calls_to("delete")) == 12
