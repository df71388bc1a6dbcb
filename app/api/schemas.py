from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.domain.ids import ORDER_ID_PATTERN
from app.domain.models import ApprovalStatus, Plan, VoiceOverride

APPROVAL_ID_PATTERN = r"^apr_[0-9A-HJKMNP-TV-Z]{26}$"
JOB_ID_PATTERN = r"^job_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    work_ticks_total: int
    idle_ticks_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class CreateOrderRequest(BaseModel):
    # Field rules live in the domain so rejected requests still leave an audit row.
    session_id: str = ""
    quiz: dict[str, object] = Field(default_factory=dict)
    customer_email: str = ""
    customer_whatsapp: str = ""
    plan: Plan = Plan.STANDARD
    amount_cents: int = 0
    transaction_id: str | None = None
    source: str | None = Field(default=None, max_length=64)


class CreateOrderResponse(BaseModel):
    success: bool
    order_id: str | None = Field(default=None, pattern=ORDER_ID_PATTERN)
    quiz_id: str | None = None
    log_id: str | None = None
    created: bool = False
    error: str | None = None


class PaymentWebhookResponse(BaseModel):
    success: bool
    outcome: Literal["ignored", "order_not_found", "already_paid", "paid", "not_payable"]
    order_id: str | None = None
    strategy: str | None = None
    already_paid: bool = False
    warnings: list[str] = Field(default_factory=list)
    notification_scheduled: bool = False


class LyricsApprovalResponse(BaseModel):
    approval_id: str = Field(pattern=APPROVAL_ID_PATTERN)
    order_id: str = Field(pattern=ORDER_ID_PATTERN)
    job_id: str = Field(pattern=JOB_ID_PATTERN)
    status: ApprovalStatus
    regeneration_count: int
    lyrics_title: str | None = None
    lyrics: str | None = None
    validation: dict[str, object] = Field(default_factory=dict)
    expires_at: datetime | None = None


class ApproveLyricsRequest(BaseModel):
    voice: VoiceOverride | None = None


class DispatchAudioResponse(BaseModel):
    job_id: str = Field(pattern=JOB_ID_PATTERN)
    order_id: str = Field(pattern=ORDER_ID_PATTERN)
    task_id: str


class SynthesisCallbackResponse(BaseModel):
    success: bool
    outcome: Literal["completed", "failed", "ignored", "duplicate"]
    task_id: str
    job_id: str | None = None
    song_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    notification_scheduled: bool = False


class AdminActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    order_id: str | None = None
    data: dict[str, object] = Field(default_factory=dict)
    actor: str | None = Field(default=None, max_length=128)


class AdminActionResponse(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None
    code: str | None = None
    data: dict[str, object] = Field(default_factory=dict)


class RetrySweepResponse(BaseModel):
    processed: int
    completed: int
    failed: int
    still_pending: int
    reclaimed: int


class ReleaseSweepResponse(BaseModel):
    processed_orders: int
    notifications_sent: int
    errors: int
