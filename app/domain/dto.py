from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from app.domain.models import NotificationType, PaymentStatus, Plan


@dataclass(frozen=True)
class CreateOrderCommand:
    session_id: str
    quiz: dict[str, object]
    customer_email: str
    customer_whatsapp: str
    plan: Plan
    amount_cents: int
    transaction_id: str | None = None
    source: str = "api"
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class CreateOrderResult:
    success: bool
    order_id: str | None = None
    quiz_id: str | None = None
    log_id: str | None = None
    created: bool = False
    error: str | None = None


@dataclass(frozen=True)
class PaymentNotification:
    """Provider webhook payload after normalization."""

    raw_status: str
    status: PaymentStatus
    email: str | None = None
    transaction_id: str | None = None
    order_reference: str | None = None
    secret: str | None = None
    event: str | None = None
    raw_payload: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentWebhookResult:
    outcome: Literal["ignored", "order_not_found", "already_paid", "paid", "not_payable"]
    order_id: str | None = None
    strategy: str | None = None
    warnings: tuple[str, ...] = ()
    notification_scheduled: bool = False

    @property
    def already_paid(self) -> bool:
        return self.outcome == "already_paid"


@dataclass(frozen=True)
class PostPaymentOutcome:
    warnings: tuple[str, ...] = ()
    notification_scheduled: bool = False


@dataclass(frozen=True)
class LLMClientRequest:
    system_prompt: str
    user_prompt: str
    model: str
    temperature: float


@dataclass(frozen=True)
class LLMClientResult:
    raw_text: str
    tokens_input: int = 0
    tokens_output: int = 0
    latency_ms: int = 0


@dataclass(frozen=True)
class LyricsAttempt:
    attempt: int
    title: str | None
    lyrics: str | None
    errors: tuple[str, ...]
    warnings: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return self.lyrics is not None and not self.errors


@dataclass(frozen=True)
class LyricsGenerationResult:
    title: str
    lyrics: str
    valid: bool
    attempt: int
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    attempts: tuple[LyricsAttempt, ...]

    def report(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "attempt": self.attempt,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "attempts_total": len(self.attempts),
        }


@dataclass(frozen=True)
class SynthesisRequest:
    title: str
    style: str
    prompt: str
    callback_url: str
    model: str
    vocal_gender: str | None = None

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "title": self.title,
            "style": self.style,
            "prompt": self.prompt,
            "customMode": True,
            "instrumental": False,
            "model": self.model,
            "callBackUrl": self.callback_url,
        }
        # Omitted entirely when there is no preference so the provider chooses.
        if self.vocal_gender in ("m", "f"):
            payload["vocalGender"] = self.vocal_gender
        return payload


@dataclass(frozen=True)
class DispatchAudioResult:
    job_id: str
    order_id: str
    task_id: str


@dataclass(frozen=True)
class DownloadedMedia:
    payload: bytes
    declared_size: int | None = None
    content_type: str | None = None


@dataclass(frozen=True)
class CallbackItem:
    audio_url: str | None
    cover_url: str | None = None
    clip_id: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class SynthesisCallback:
    task_id: str
    kind: Literal["complete", "failed", "progress"]
    items: tuple[CallbackItem, ...] = ()
    error_message: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    outcome: Literal["completed", "failed", "ignored", "duplicate"]
    job_id: str | None = None
    song_ids: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    notification_scheduled: bool = False


@dataclass(frozen=True)
class RetrySweepResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    reclaimed: int = 0


@dataclass(frozen=True)
class NotificationRequest:
    order_id: str
    notification_type: NotificationType
    recipient: str
    variables: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationResult:
    sent: bool
    already_sent: bool = False
    attempts: int = 0
    provider_message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ReleaseSweepResult:
    processed_orders: int = 0
    notifications_sent: int = 0
    errors: int = 0


@dataclass(frozen=True)
class AdminActionCommand:
    action: str
    order_id: str | None
    data: dict[str, object] = field(default_factory=dict)
    actor: str = "admin"


@dataclass(frozen=True)
class ActionSuccess:
    message: str
    data: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionFailure:
    error: str
    code: str = "business_rule"


AdminActionResult = ActionSuccess | ActionFailure
