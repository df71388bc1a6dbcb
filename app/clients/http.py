from __future__ import annotations

import time

import httpx

from app.domain.contracts import STORAGE_PREFIXES
from app.domain.dto import DownloadedMedia, LLMClientRequest, LLMClientResult
from app.domain.errors import DomainDependencyError


def _bearer(api_key: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


async def _send(client: httpx.AsyncClient, method: str, url: str, **kwargs: object) -> httpx.Response:
    """Issue one request and translate transport failures and non-2xx answers."""
    try:
        response = await client.request(method, url, **kwargs)  # type: ignore[arg-type]
    except httpx.TimeoutException as exc:
        raise DomainDependencyError(f"{method} {url} timed out", code="timeout") from exc
    except httpx.TransportError as exc:
        raise DomainDependencyError(f"{method} {url} failed: {exc}", code="transport_error") from exc
    if response.status_code >= 400:
        raise DomainDependencyError(
            f"{method} {url} answered {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    return response


def _json_object(response: httpx.Response) -> dict[str, object]:
    try:
        body = response.json()
    except ValueError as exc:
        raise DomainDependencyError(f"provider answered non-JSON body: {response.text[:200]}") from exc
    if not isinstance(body, dict):
        raise DomainDependencyError("provider answered a non-object JSON body")
    return body


class HttpLLMClient:
    """Chat-completions style text generation provider."""

    def __init__(self, *, client: httpx.AsyncClient, url: str, api_key: str | None) -> None:
        self._client = client
        self._url = url
        self._api_key = api_key

    async def generate(self, request: LLMClientRequest) -> LLMClientResult:
        started = time.monotonic()
        response = await _send(
            self._client,
            "POST",
            self._url,
            headers=_bearer(self._api_key),
            json={
                "model": request.model,
                "temperature": request.temperature,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": request.system_prompt},
                    {"role": "user", "content": request.user_prompt},
                ],
            },
        )
        body = _json_object(response)
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise DomainDependencyError("text generation response has no choices")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise DomainDependencyError("text generation response has empty content")
        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        return LLMClientResult(
            raw_text=content,
            tokens_input=int(usage.get("prompt_tokens", 0)),  # type: ignore[union-attr]
            tokens_output=int(usage.get("completion_tokens", 0)),  # type: ignore[union-attr]
            latency_ms=int((time.monotonic() - started) * 1000),
        )


class HttpSynthesisClient:
    def __init__(self, *, client: httpx.AsyncClient, url: str, api_key: str | None) -> None:
        self._client = client
        self._url = url
        self._api_key = api_key

    async def submit(self, payload: dict[str, object]) -> dict[str, object]:
        response = await _send(self._client, "POST", self._url, headers=_bearer(self._api_key), json=payload)
        return _json_object(response)


class HttpMediaClient:
    def __init__(self, *, client: httpx.AsyncClient) -> None:
        self._client = client

    async def download(self, url: str) -> DownloadedMedia:
        response = await _send(self._client, "GET", url, follow_redirects=True)
        declared = response.headers.get("content-length")
        return DownloadedMedia(
            payload=response.content,
            declared_size=int(declared) if declared and declared.isdigit() else None,
            content_type=response.headers.get("content-type"),
        )


class HttpEmailClient:
    def __init__(self, *, client: httpx.AsyncClient, url: str, api_key: str | None, sender: str) -> None:
        self._client = client
        self._url = url
        self._api_key = api_key
        self._sender = sender

    async def send(self, *, recipient: str, template: str, variables: dict[str, object]) -> str | None:
        response = await _send(
            self._client,
            "POST",
            self._url,
            headers=_bearer(self._api_key),
            json={"from": self._sender, "to": [recipient], "template": template, "variables": variables},
        )
        message_id = _json_object(response).get("id")
        return str(message_id) if message_id is not None else None


class HttpStorageClient:
    """Object storage reached over plain HTTP PUT; objects are served from a public base URL."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        upload_url: str,
        public_base_url: str,
        api_key: str | None,
    ) -> None:
        self._client = client
        self._upload_url = upload_url.rstrip("/")
        self._public_base_url = public_base_url.rstrip("/")
        self._api_key = api_key

    async def put_bytes(self, *, key: str, payload: bytes, content_type: str) -> str:
        if not any(key.startswith(prefix) for prefix in STORAGE_PREFIXES):
            raise ValueError("storage key must start with an allowed prefix")
        await _send(
            self._client,
            "PUT",
            f"{self._upload_url}/{key}",
            headers={**_bearer(self._api_key), "Content-Type": content_type},
            content=payload,
        )
        return f"{self._public_base_url}/{key}"
