from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


# Canonical entity statuses.
#
# IMPORTANT:
# - Keep these enums synchronized with app/domain/lifecycle.py
#   (ORDER_TRANSITIONS, JOB_TRANSITIONS, ...).
# - Keep these enums synchronized with the DB status CHECK constraints in
#   db/migrations/000001_bootstrap.up.sql.
# - Any status add/remove/rename must be done atomically across all these files.
class OrderStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(StrEnum):
    """Canonical payment status after provider normalization."""

    APPROVED = "approved"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    PENDING = "pending"


class Plan(StrEnum):
    STANDARD = "standard"
    EXPRESS = "express"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    GENERATING_AUDIO = "generating_audio"
    AUDIO_PROCESSING = "audio_processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_PENDING = "retry_pending"


# Jobs in these states may hold a billable synthesis request. At most one job
# per order is in one of them (jobs_one_in_flight_per_order_key).
IN_FLIGHT_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.GENERATING_AUDIO, JobStatus.AUDIO_PROCESSING, JobStatus.FINALIZING}
)


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SongStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    APPROVED = "approved"
    RELEASED = "released"


class RetryQueueStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryQueueKind(StrEnum):
    QUIZ_UPSERT = "quiz_upsert"


class NotificationType(StrEnum):
    ORDER_PAID = "order_paid"
    SONG_READY = "song_ready"
    SONG_RELEASED = "song_released"


class VoiceOverride(StrEnum):
    MALE = "M"
    FEMALE = "F"
    SURPRISE = "S"


@dataclass(frozen=True)
class QuizSnapshot:
    quiz_id: str
    session_id: str
    about_who: str
    style: str
    relationship: str | None = None
    occasion: str | None = None
    language: str = "pt"
    desired_tone: str | None = None
    message: str | None = None
    qualities: str | None = None
    memories: str | None = None
    key_moments: str | None = None
    vocal_gender: str | None = None
    created_at: datetime | None = None

    def brief_text(self) -> str:
        parts = (
            self.about_who,
            self.relationship,
            self.occasion,
            self.message,
            self.qualities,
            self.memories,
            self.key_moments,
        )
        return "\n".join(part for part in parts if part)


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: str
    quiz_id: str
    session_id: str
    status: OrderStatus
    plan: Plan
    amount_cents: int
    customer_email: str
    customer_whatsapp: str | None = None
    payment_provider: str | None = None
    transaction_id: str | None = None
    payment_status: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    order_id: str
    quiz_id: str
    status: JobStatus
    lyrics_title: str | None = None
    lyrics: str | None = None
    task_id: str | None = None
    audio_url: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LyricsApprovalSnapshot:
    approval_id: str
    order_id: str
    job_id: str
    status: ApprovalStatus
    regeneration_count: int = 0
    expires_at: datetime | None = None
    voice: VoiceOverride | None = None
    lyrics_title: str | None = None
    lyrics: str | None = None
    validation: dict[str, object] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SongSnapshot:
    song_id: str
    order_id: str
    job_id: str
    title: str
    variant_number: int
    status: SongStatus
    audio_url: str | None = None
    cover_url: str | None = None
    lyrics: str | None = None
    provider_clip_id: str | None = None
    task_id: str | None = None
    release_at: datetime | None = None
    released_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class GenerationTaskSnapshot:
    task_id: str
    job_id: str
    order_id: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class RetryQueueItemSnapshot:
    item_id: str
    kind: RetryQueueKind
    payload: dict[str, object]
    status: RetryQueueStatus
    attempts: int
    max_attempts: int
    next_retry_at: datetime
    session_id: str | None = None
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class NotificationLogEntry:
    order_id: str
    notification_type: NotificationType
    status: str
    attempts: int
    provider_message_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class CreateOrderOutcome:
    order_id: str
    quiz_id: str
    created: bool
