from __future__ import annotations

from collections.abc import Awaitable
from datetime import datetime
from typing import Protocol, runtime_checkable

from app.domain.dto import DownloadedMedia, LLMClientRequest, LLMClientResult
from app.domain.models import (
    ApprovalStatus,
    CreateOrderOutcome,
    GenerationTaskSnapshot,
    JobSnapshot,
    JobStatus,
    LyricsApprovalSnapshot,
    NotificationLogEntry,
    NotificationType,
    OrderSnapshot,
    OrderStatus,
    QuizSnapshot,
    RetryQueueItemSnapshot,
    RetryQueueKind,
    SongSnapshot,
    VoiceOverride,
)

STORAGE_PREFIXES = ("media/",)


@runtime_checkable
class OrderRepository(Protocol):
    """Durable storage for orders and everything hanging off them.

    Storage is the only coordination point between concurrent requests, so
    every check-then-act write below is conditional at the storage layer and
    reports whether it actually applied.
    """

    # Orders and briefs.
    async def create_order_with_quiz(
        self,
        *,
        session_id: str,
        quiz: dict[str, object],
        customer_email: str,
        customer_whatsapp: str | None,
        plan: str,
        amount_cents: int,
        transaction_id: str | None,
        payment_provider: str,
    ) -> CreateOrderOutcome: ...

    async def upsert_quiz_by_session(self, *, session_id: str, quiz: dict[str, object]) -> str: ...

    async def get_order(self, *, order_id: str) -> OrderSnapshot | None: ...

    async def get_quiz(self, *, quiz_id: str) -> QuizSnapshot | None: ...

    async def find_order_by_transaction(self, *, transaction_id: str) -> OrderSnapshot | None: ...

    async def find_latest_pending_order_by_email(self, *, email: str) -> OrderSnapshot | None: ...

    async def find_latest_paid_order_by_email(self, *, email: str) -> OrderSnapshot | None: ...

    # Returns False when the order was already paid.
    async def mark_order_paid(
        self,
        *,
        order_id: str,
        payment_provider: str,
        transaction_id: str | None,
        payment_status: str,
        paid_at: datetime,
    ) -> bool: ...

    async def transition_order(self, *, order_id: str, from_state: OrderStatus, to_state: OrderStatus) -> OrderSnapshot: ...

    async def complete_checkout_funnel(self, *, order_id: str) -> None: ...

    async def delete_order(self, *, order_id: str) -> bool: ...

    async def delete_stale_pending_orders(self, *, created_before: datetime) -> int: ...

    # Audit trails.
    async def record_order_creation_log(
        self,
        *,
        session_id: str,
        status: str,
        inputs: dict[str, object],
        error: str | None = None,
        quiz_id: str | None = None,
        order_id: str | None = None,
    ) -> str: ...

    async def record_webhook_log(
        self,
        *,
        event: str | None,
        status: str,
        strategy: str | None,
        order_id: str | None,
        order_found: bool,
        outcome: str,
        payload: dict[str, object],
        error: str | None = None,
    ) -> None: ...

    async def record_admin_log(
        self,
        *,
        actor: str,
        action: str,
        target_table: str,
        target_id: str | None,
        changes: dict[str, object],
    ) -> None: ...

    # Jobs.
    async def get_or_create_job(self, *, order_id: str, quiz_id: str) -> JobSnapshot: ...

    async def get_job(self, *, job_id: str) -> JobSnapshot | None: ...

    async def list_jobs_for_order(self, *, order_id: str) -> list[JobSnapshot]: ...

    # Raises DomainConflictError when entering an in-flight status while
    # another job of the same order is already in flight.
    async def transition_job(
        self,
        *,
        job_id: str,
        from_states: tuple[JobStatus, ...],
        to_state: JobStatus,
        error_message: str | None = None,
    ) -> JobSnapshot: ...

    async def save_job_lyrics(self, *, job_id: str, title: str, lyrics: str) -> None: ...

    async def find_in_flight_sibling(self, *, order_id: str, exclude_job_id: str) -> JobSnapshot | None: ...

    # Writes only when the job has no task id yet; moves it to audio_processing.
    async def set_job_task_id(self, *, job_id: str, task_id: str) -> bool: ...

    async def find_job_by_task_id(self, *, task_id: str) -> JobSnapshot | None: ...

    # Moves an in-flight job to finalizing; False when another delivery holds it.
    async def claim_job_finalization(self, *, job_id: str) -> bool: ...

    # Only a finalizing job completes; returns False otherwise.
    async def complete_job(self, *, job_id: str, audio_url: str | None, completed_at: datetime) -> bool: ...

    # Lyrics approvals.
    async def upsert_pending_approval(
        self,
        *,
        order_id: str,
        job_id: str,
        title: str,
        lyrics: str,
        validation: dict[str, object],
        expires_at: datetime,
    ) -> LyricsApprovalSnapshot: ...

    async def get_approval(self, *, approval_id: str) -> LyricsApprovalSnapshot | None: ...

    async def find_latest_approval_for_job(self, *, job_id: str) -> LyricsApprovalSnapshot | None: ...

    async def decide_approval(
        self,
        *,
        approval_id: str,
        status: ApprovalStatus,
        voice: VoiceOverride | None = None,
    ) -> LyricsApprovalSnapshot: ...

    # Generation task correlation.
    async def record_generation_task(self, *, task_id: str, job_id: str, order_id: str) -> None: ...

    async def resolve_generation_task(self, *, task_id: str) -> GenerationTaskSnapshot | None: ...

    # Songs.
    # Raises DomainConflictError on a duplicate (job_id, variant_number).
    async def create_song(
        self,
        *,
        order_id: str,
        job_id: str,
        title: str,
        variant_number: int,
        audio_url: str,
        cover_url: str | None,
        lyrics: str | None,
        provider_clip_id: str | None,
        task_id: str,
        release_at: datetime,
    ) -> SongSnapshot: ...

    async def get_song(self, *, song_id: str) -> SongSnapshot | None: ...

    async def list_songs_for_order(self, *, order_id: str) -> list[SongSnapshot]: ...

    async def approve_song(self, *, song_id: str) -> SongSnapshot: ...

    async def release_song(self, *, song_id: str, released_at: datetime) -> SongSnapshot: ...

    async def list_due_songs(self, *, now: datetime) -> list[SongSnapshot]: ...

    async def release_order_songs(self, *, order_id: str, released_at: datetime) -> list[str]: ...

    # Retry queue.
    async def enqueue_retry_item(
        self,
        *,
        kind: RetryQueueKind,
        session_id: str | None,
        payload: dict[str, object],
        max_attempts: int,
        next_retry_at: datetime,
    ) -> RetryQueueItemSnapshot: ...

    async def get_retry_item(self, *, item_id: str) -> RetryQueueItemSnapshot | None: ...

    async def reclaim_stale_retry_items(self, *, claimed_before: datetime) -> int: ...

    async def list_due_retry_items(self, *, now: datetime, limit: int) -> list[RetryQueueItemSnapshot]: ...

    # pending -> processing; False when another sweep claimed it first.
    async def claim_retry_item(self, *, item_id: str, claimed_at: datetime) -> bool: ...

    async def complete_retry_item(self, *, item_id: str) -> None: ...

    async def reschedule_retry_item(
        self,
        *,
        item_id: str,
        attempts: int,
        next_retry_at: datetime,
        last_error: str,
    ) -> None: ...

    async def fail_retry_item(self, *, item_id: str, attempts: int, last_error: str) -> None: ...

    # Notification log.
    async def find_successful_notification(
        self,
        *,
        order_id: str,
        notification_type: NotificationType,
    ) -> NotificationLogEntry | None: ...

    async def record_notification(
        self,
        *,
        order_id: str,
        notification_type: NotificationType,
        status: str,
        attempts: int,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> None: ...


@runtime_checkable
class StorageClient(Protocol):
    """Owned media storage using prefix-scoped keys."""

    async def put_bytes(self, *, key: str, payload: bytes, content_type: str) -> str: ...


@runtime_checkable
class LLMClient(Protocol):
    async def generate(self, request: LLMClientRequest) -> LLMClientResult: ...


@runtime_checkable
class SynthesisClient(Protocol):
    async def submit(self, payload: dict[str, object]) -> dict[str, object]: ...


@runtime_checkable
class MediaClient(Protocol):
    async def download(self, url: str) -> DownloadedMedia: ...


@runtime_checkable
class EmailClient(Protocol):
    async def send(self, *, recipient: str, template: str, variables: dict[str, object]) -> str | None: ...


@runtime_checkable
class TaskSpawner(Protocol):
    """Runs a coroutine off the caller's path and keeps it alive until it finishes."""

    def spawn(self, coro: Awaitable[object], *, name: str) -> object: ...
