from __future__ import annotations

from datetime import datetime, timezone
import io
import os

from PIL import Image
import pytest

from policytracker.core.config import get_settings
from policytracker.domain.models import UsageRecord
from policytracker.persistence.db import SessionLocal
from policytracker.tests.utils.auth import auth_headers, new_user_id


def _noisy_png(width: int, height: int) -> bytes:
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.mark.asyncio
async def test_image_upload_is_compressed_and_charged(client) -> None:
    data = _noisy_png(2000, 1000)
    headers = auth_headers(new_user_id())

    response = await client.post(
        "/v1/documents/compress",
        files={"file": ("policy-scan.png", data, "image/png")},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert "policy-scan.jpg" in response.headers["content-disposition"]
    assert int(response.headers["X-Original-Size"]) == len(data)
    compressed_size = int(response.headers["X-Compressed-Size"])
    assert compressed_size == len(response.content) < len(data)
    assert int(response.headers["X-Storage-Used"]) == compressed_size

    usage = await client.get("/v1/usage", headers=headers)
    assert usage.json()["data"]["storage_used_bytes"] == compressed_size


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(client) -> None:
    response = await client.post(
        "/v1/documents/compress",
        files={"file": ("empty.pdf", b"", "application/pdf")},
        headers=auth_headers(new_user_id()),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected(client, monkeypatch) -> None:
    monkeypatch.setenv("COMPRESSION_MAX_UPLOAD_BYTES", "16")
    get_settings.cache_clear()

    response = await client.post(
        "/v1/documents/compress",
        files={"file": ("notes.txt", b"x" * 32, "text/plain")},
        headers=auth_headers(new_user_id()),
    )

    assert response.status_code == 413
    assert response.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.asyncio
async def test_storage_quota_exhaustion_returns_402(client) -> None:
    user_id = new_user_id()
    month_year = datetime.now(timezone.utc).strftime("%Y-%m")
    async with SessionLocal() as session:
        session.add(
            UsageRecord(
                user_id=user_id,
                month_year=month_year,
                ocr_scans_used=0,
                storage_used_bytes=2 * 1024 ** 3 - 4,
            )
        )
        await session.commit()

    response = await client.post(
        "/v1/documents/compress",
        files={"file": ("notes.txt", b"renewal notes", "text/plain")},
        headers=auth_headers(user_id),
    )

    assert response.status_code == 402
    assert response.json()["error"]["details"]["metric"] == "storage"


@pytest.mark.asyncio
async def test_undecodable_image_is_stored_unchanged(client) -> None:
    data = b"\x89PNG\r\n\x1a\n truncated scan"
    headers = auth_headers(new_user_id())

    response = await client.post(
        "/v1/documents/compress",
        files={"file": ("broken.png", data, "image/png")},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.content == data
    assert response.headers["content-type"] == "image/png"
    assert int(response.headers["X-Compressed-Size"]) == len(data)


@pytest.mark.asyncio
async def test_oversize_pixel_image_is_stored_unchanged(client, monkeypatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    data = _noisy_png(100, 100)

    response = await client.post(
        "/v1/documents/compress",
        files={"file": ("huge-scan.png", data, "image/png")},
        headers=auth_headers(new_user_id()),
    )

    assert response.status_code == 200
    assert response.content == data
    assert "huge-scan.png" in response.headers["content-disposition"]
