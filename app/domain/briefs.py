from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

from app.domain.errors import DomainValidationError
from app.domain.models import QuizSnapshot

LEGACY_NARRATIVE_FIELDS = ("qualities", "memories", "key_moments")
QUIZ_TEXT_FIELDS = (
    "about_who",
    "relationship",
    "occasion",
    "style",
    "language",
    "desired_tone",
    "message",
    "vocal_gender",
) + LEGACY_NARRATIVE_FIELDS


def _text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_quiz_payload(payload: object) -> dict[str, object]:
    """Validate a brief and return its normalized field set.

    A brief carries either the structured ``message`` field or at least one of
    the legacy narrative fields. When both are present the message wins and the
    legacy fields are dropped.
    """
    if not isinstance(payload, Mapping):
        raise DomainValidationError("invalid quiz payload format")
    normalized: dict[str, object] = {name: _text(payload.get(name)) for name in QUIZ_TEXT_FIELDS}
    if not normalized["about_who"] or not normalized["style"]:
        raise DomainValidationError("about_who and style are required")
    has_message = normalized["message"] is not None
    has_legacy = any(normalized[name] is not None for name in LEGACY_NARRATIVE_FIELDS)
    if not has_message and not has_legacy:
        raise DomainValidationError("message (or qualities/memories/key_moments for legacy briefs) is required")
    if has_message:
        for name in LEGACY_NARRATIVE_FIELDS:
            normalized[name] = None
    vocal_gender = normalized["vocal_gender"]
    if vocal_gender is not None and str(vocal_gender).lower() not in ("m", "f"):
        normalized["vocal_gender"] = None
    elif vocal_gender is not None:
        normalized["vocal_gender"] = str(vocal_gender).lower()
    normalized["language"] = normalized["language"] or "pt"
    return normalized


def quiz_snapshot(
    *,
    quiz_id: str,
    session_id: str,
    fields: Mapping[str, object],
    created_at: datetime | None = None,
) -> QuizSnapshot:
    def _get(name: str) -> str | None:
        return _text(fields.get(name))

    return QuizSnapshot(
        quiz_id=quiz_id,
        session_id=session_id,
        about_who=_get("about_who") or "",
        style=_get("style") or "",
        relationship=_get("relationship"),
        occasion=_get("occasion"),
        language=_get("language") or "pt",
        desired_tone=_get("desired_tone"),
        message=_get("message"),
        qualities=_get("qualities"),
        memories=_get("memories"),
        key_moments=_get("key_moments"),
        vocal_gender=_get("vocal_gender"),
        created_at=created_at,
    )
