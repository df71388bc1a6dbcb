from __future__ import annotations

import re

from app.domain.dto import CallbackItem, DownloadedMedia, SynthesisCallback, SynthesisRequest
from app.domain.errors import DomainDependencyError, DomainValidationError
from app.domain.models import VoiceOverride

STYLE_MAP: dict[str, str] = {
    "romântico": "pop",
    "romantico": "pop",
    "romántico": "pop",
    "romantic": "pop",
    "pop": "pop",
    "rock": "rock",
    "mpb": "mpb",
    "forró": "forro",
    "forro": "forro",
    "jazz": "jazz",
    "gospel": "gospel",
    "louvor": "gospel",
    "praise": "gospel",
    "alabanza": "gospel",
    "reggae": "reggae",
    "eletrônico": "electronic",
    "eletronico": "electronic",
    "electronic": "electronic",
    "rap": "rap",
    "hip-hop": "rap",
    "hip hop": "rap",
}
STYLE_SUFFIX = "emotional, slow, romantic, acoustic"
MAX_STYLE_LENGTH = 1000
MAX_LYRICS_LENGTH = 5000

METADATA_LINE_RE = re.compile(r"^\s*(?:BPM|Tom|Duração|Instrumental|Vocal|Estrutura)\s*:.*$", re.IGNORECASE | re.MULTILINE)

MIN_MEDIA_BYTES = 10 * 1024
MAX_MEDIA_BYTES = 50 * 1024 * 1024
MEDIA_SIZE_TOLERANCE = 0.05

COMPLETE_KINDS = frozenset({"complete", "success", "completed"})
FAILED_KINDS = frozenset({"error", "failed", "failure"})


def map_style(style: str | None) -> str:
    if not style or not style.strip():
        return "pop"
    normalized = style.strip().lower()
    if normalized.startswith("sertanejo"):
        return "sertanejo"
    return STYLE_MAP.get(normalized, normalized)


def build_style_tags(style: str | None) -> str:
    return f"{map_style(style)}, {STYLE_SUFFIX}"[:MAX_STYLE_LENGTH]


def sanitize_lyrics(lyrics: str) -> str:
    cleaned = METADATA_LINE_RE.sub("", lyrics)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    if not cleaned:
        raise DomainValidationError("lyrics are empty")
    if len(cleaned) > MAX_LYRICS_LENGTH:
        raise DomainValidationError(f"lyrics exceed {MAX_LYRICS_LENGTH} characters ({len(cleaned)})")
    return cleaned


def resolve_voice(approval_voice: VoiceOverride | str | None, quiz_vocal_gender: str | None) -> str | None:
    """Operator override, then the brief, then no preference."""
    if approval_voice:
        override = str(approval_voice).upper()
        if override == VoiceOverride.MALE:
            return "m"
        if override == VoiceOverride.FEMALE:
            return "f"
        return None
    if quiz_vocal_gender in ("m", "f"):
        return quiz_vocal_gender
    return None


def build_synthesis_request(
    *,
    title: str,
    lyrics: str,
    style: str | None,
    voice: str | None,
    callback_url: str,
    model: str,
) -> SynthesisRequest:
    return SynthesisRequest(
        title=title[:80] or "Untitled",
        style=build_style_tags(style),
        prompt=sanitize_lyrics(lyrics),
        callback_url=callback_url,
        model=model,
        vocal_gender=voice,
    )


def _first_str(*values: object) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    return None


def _as_dict(value: object) -> dict[str, object]:
    return value if isinstance(value, dict) else {}


def extract_task_id(response: dict[str, object]) -> str:
    """Validate a submission response and return its task id."""
    code = response.get("code")
    if code is not None and code not in (200, 0, "200", "0"):
        message = _first_str(response.get("msg"), response.get("message")) or "unknown error"
        status_code = code if isinstance(code, int) else None
        raise DomainDependencyError(f"synthesis provider rejected request: {message}", status_code=status_code)
    status = str(response.get("status") or "").lower()
    if status in FAILED_KINDS:
        raise DomainDependencyError("synthesis provider reported failure status")
    data = _as_dict(response.get("data"))
    task_id = _first_str(
        data.get("taskId"),
        data.get("jobId"),
        response.get("taskId"),
        response.get("task_id"),
        response.get("id"),
    )
    if task_id is None:
        raise DomainDependencyError("synthesis provider response has no task id")
    return task_id


def _callback_items(payload: dict[str, object]) -> list[dict[str, object]]:
    data = _as_dict(payload.get("data"))
    result = _as_dict(payload.get("result"))
    for candidate in (
        data.get("data"),
        data.get("musics"),
        payload.get("musics"),
        data.get("clips"),
        payload.get("clips"),
        result.get("items"),
        payload.get("result"),
    ):
        if isinstance(candidate, list):
            return [item for item in candidate if isinstance(item, dict)]
        if isinstance(candidate, dict):
            return [candidate]
    return []


def parse_callback(payload: dict[str, object]) -> SynthesisCallback:
    data = _as_dict(payload.get("data"))
    result = _as_dict(payload.get("result"))
    task_id = _first_str(payload.get("task_id"), payload.get("taskId"), data.get("task_id"), data.get("taskId"))
    if task_id is None:
        raise DomainValidationError("task_id is required")
    raw_kind = str(
        data.get("callbackType") or payload.get("callbackType") or payload.get("status") or result.get("status") or ""
    ).lower()
    items = tuple(
        CallbackItem(
            audio_url=_first_str(item.get("audio_url"), item.get("audioUrl"), item.get("audio")),
            cover_url=_first_str(item.get("image_url"), item.get("imageUrl"), item.get("cover_url")),
            clip_id=_first_str(item.get("id"), item.get("clip_id"), item.get("clipId"), item.get("audioId")),
            title=_first_str(item.get("title")),
        )
        for item in _callback_items(payload)
    )
    if raw_kind in COMPLETE_KINDS:
        return SynthesisCallback(task_id=task_id, kind="complete", items=items)
    if raw_kind in FAILED_KINDS:
        error_message = _first_str(
            payload.get("msg"), payload.get("error"), data.get("msg"), data.get("error"), result.get("error")
        )
        return SynthesisCallback(task_id=task_id, kind="failed", items=items, error_message=error_message)
    return SynthesisCallback(task_id=task_id, kind="progress", items=items)


def validate_media(media: DownloadedMedia) -> None:
    size = len(media.payload)
    if size < MIN_MEDIA_BYTES:
        raise DomainDependencyError(f"downloaded media is too small ({size} bytes)")
    if size > MAX_MEDIA_BYTES:
        raise DomainDependencyError(f"downloaded media is too large ({size} bytes)")
    if media.declared_size:
        drift = abs(size - media.declared_size) / media.declared_size
        if drift > MEDIA_SIZE_TOLERANCE:
            raise DomainDependencyError(
                f"downloaded media size {size} does not match declared size {media.declared_size}"
            )


def media_key(task_id: str, variant: int, extension: str) -> str:
    return f"media/{task_id}-{variant}.{extension}"
