from __future__ import annotations

import asyncio

import httpx
import pytest

from app.clients.http import HttpStorageClient
from app.domain.errors import DomainDependencyError


def _storage(transport: httpx.MockTransport) -> tuple[HttpStorageClient, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=transport)
    storage = HttpStorageClient(
        client=client,
        upload_url="https://storage.example.invalid/upload/",
        public_base_url="https://media.example.invalid/",
        api_key="storage-key",
    )
    return storage, client


@pytest.mark.unit
def test_storage_put_uploads_and_returns_public_url() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    async def _run() -> str:
        storage, client = _storage(httpx.MockTransport(_handler))
        async with client:
            return await storage.put_bytes(key="media/task-1-1.mp3", payload=b"ID3audio", content_type="audio/mpeg")

    url = asyncio.run(_run())

    assert url == "https://media.example.invalid/media/task-1-1.mp3"
    assert len(seen) == 1
    request = seen[0]
    assert request.method == "PUT"
    assert str(request.url) == "https://storage.example.invalid/upload/media/task-1-1.mp3"
    assert request.headers["authorization"] == "Bearer storage-key"
    assert request.headers["content-type"] == "audio/mpeg"
    assert request.content == b"ID3audio"


@pytest.mark.unit
def test_storage_rejects_keys_outside_allowed_prefixes() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected upload to {request.url}")

    async def _run() -> None:
        storage, client = _storage(httpx.MockTransport(_handler))
        async with client:
            await storage.put_bytes(key="secrets/key.pem", payload=b"x", content_type="text/plain")

    with pytest.raises(ValueError, match="allowed prefix"):
        asyncio.run(_run())


@pytest.mark.unit
def test_storage_error_answer_is_a_dependency_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        del request
        return httpx.Response(503, text="bucket unavailable")

    async def _run() -> None:
        storage, client = _storage(httpx.MockTransport(_handler))
        async with client:
            await storage.put_bytes(key="media/task-1-1.mp3", payload=b"x", content_type="audio/mpeg")

    with pytest.raises(DomainDependencyError) as exc_info:
        asyncio.run(_run())
    assert exc_info.value.status_code == 503
