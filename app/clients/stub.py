from __future__ import annotations

from dataclasses import dataclass, field
import json

from app.domain.contracts import STORAGE_PREFIXES
from app.domain.dto import DownloadedMedia, LLMClientRequest, LLMClientResult

DEFAULT_STUB_LYRICS = "\n".join(
    (
        "[Verso 1]",
        "Lembro do primeiro dia em que te vi sorrir",
        "O mundo ficou leve e eu quis ficar ali",
        "",
        "[Pré-Refrão]",
        "E cada passo nosso virou canção",
        "",
        "[Refrão]",
        "Você é minha casa, meu lugar",
        "Meu céu inteiro cabe no teu olhar",
        "",
        "[Verso 2]",
        "Nas manhãs de domingo o café tem teu calor",
        "Nas noites mais difíceis você foi meu amor",
        "",
        "[Verso 3]",
        "Construímos sonhos com as mãos e com a fé",
        "E sigo ao teu lado seja como for",
        "",
        "[Pré-Refrão]",
        "E cada passo nosso virou canção",
        "",
        "[Refrão]",
        "Você é minha casa, meu lugar",
        "Meu céu inteiro cabe no teu olhar",
        "",
        "[Ponte]",
        "Se o tempo passar, eu vou te escolher",
        "",
        "[Refrão Final]",
        "Você é minha casa, meu lugar",
        "Para sempre o meu caminho é te amar",
    )
)

# Smallest payload that passes media size validation.
STUB_MEDIA_BYTES = b"\x00" * (16 * 1024)


@dataclass
class StubStorageClient:
    base_url: str = "memory://media"
    writes: list[str] = field(default_factory=list)
    objects: dict[str, bytes] = field(default_factory=dict)
    content_types: dict[str, str] = field(default_factory=dict)

    async def put_bytes(self, *, key: str, payload: bytes, content_type: str) -> str:
        if not any(key.startswith(prefix) for prefix in STORAGE_PREFIXES):
            raise ValueError("storage key must start with an allowed prefix")
        self.writes.append(key)
        self.objects[key] = payload
        self.content_types[key] = content_type
        return f"{self.base_url.rstrip('/')}/{key}"


@dataclass
class StubLLMClient:
    """Replays scripted responses in order, then falls back to valid default lyrics."""

    responses: list[str] = field(default_factory=list)
    calls: list[LLMClientRequest] = field(default_factory=list)

    async def generate(self, request: LLMClientRequest) -> LLMClientResult:
        self.calls.append(request)
        if self.responses:
            raw_text = self.responses.pop(0)
        else:
            raw_text = json.dumps({"title": "Nossa Canção", "lyrics": DEFAULT_STUB_LYRICS}, ensure_ascii=False)
        return LLMClientResult(
            raw_text=raw_text,
            tokens_input=len(request.user_prompt) // 4,
            tokens_output=len(raw_text) // 4,
            latency_ms=120,
        )


@dataclass
class StubSynthesisClient:
    calls: list[dict[str, object]] = field(default_factory=list)
    task_prefix: str = "stub-task"

    async def submit(self, payload: dict[str, object]) -> dict[str, object]:
        self.calls.append(payload)
        return {"code": 200, "msg": "success", "data": {"taskId": f"{self.task_prefix}-{len(self.calls)}"}}


@dataclass
class StubMediaClient:
    downloads: list[str] = field(default_factory=list)
    payloads: dict[str, bytes] = field(default_factory=dict)

    async def download(self, url: str) -> DownloadedMedia:
        self.downloads.append(url)
        payload = self.payloads.get(url, STUB_MEDIA_BYTES)
        return DownloadedMedia(payload=payload, declared_size=len(payload))


@dataclass
class StubEmailClient:
    sent: list[dict[str, object]] = field(default_factory=list)

    async def send(self, *, recipient: str, template: str, variables: dict[str, object]) -> str | None:
        self.sent.append({"recipient": recipient, "template": template, "variables": dict(variables)})
        return f"msg:{len(self.sent)}"
