from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.domain.briefs import quiz_snapshot, validate_quiz_payload
from app.domain.errors import DomainConflictError, DomainInvariantError, DomainNotFoundError
from app.domain.ids import (
    new_approval_id,
    new_job_id,
    new_log_id,
    new_order_id,
    new_quiz_id,
    new_retry_item_id,
    new_song_id,
)
from app.domain.lifecycle import ensure_transition
from app.domain.models import (
    IN_FLIGHT_JOB_STATUSES,
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
    Plan,
    QuizSnapshot,
    RetryQueueItemSnapshot,
    RetryQueueKind,
    RetryQueueStatus,
    SongSnapshot,
    SongStatus,
    VoiceOverride,
)


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _QuizRow:
    quiz_id: str
    session_id: str
    fields: dict[str, object]
    created_at: datetime = field(default_factory=_now)


@dataclass
class _OrderRow:
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
    funnel_completed: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class _JobRow:
    job_id: str
    order_id: str
    quiz_id: str
    status: JobStatus = JobStatus.PENDING
    lyrics_title: str | None = None
    lyrics: str | None = None
    task_id: str | None = None
    audio_url: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class _ApprovalRow:
    approval_id: str
    order_id: str
    job_id: str
    status: ApprovalStatus
    lyrics_title: str
    lyrics: str
    validation: dict[str, object]
    expires_at: datetime
    regeneration_count: int = 0
    voice: VoiceOverride | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class _SongRow:
    song_id: str
    order_id: str
    job_id: str
    title: str
    variant_number: int
    status: SongStatus
    audio_url: str | None
    cover_url: str | None
    lyrics: str | None
    provider_clip_id: str | None
    task_id: str | None
    release_at: datetime | None
    released_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class _RetryItemRow:
    item_id: str
    kind: RetryQueueKind
    session_id: str | None
    payload: dict[str, object]
    status: RetryQueueStatus
    attempts: int
    max_attempts: int
    next_retry_at: datetime
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


# Tables snapshotted by _transaction().
_TRANSACTIONAL_TABLES = ("quizzes", "orders")


@dataclass
class InMemoryOrderRepository:
    """Non-network repository with the same conditional-write semantics as Postgres."""

    quizzes: dict[str, _QuizRow] = field(default_factory=dict)
    orders: dict[str, _OrderRow] = field(default_factory=dict)
    jobs: dict[str, _JobRow] = field(default_factory=dict)
    approvals: dict[str, _ApprovalRow] = field(default_factory=dict)
    songs: dict[str, _SongRow] = field(default_factory=dict)
    generation_tasks: dict[str, GenerationTaskSnapshot] = field(default_factory=dict)
    retry_items: dict[str, _RetryItemRow] = field(default_factory=dict)
    notifications: list[NotificationLogEntry] = field(default_factory=list)
    order_creation_logs: list[dict[str, object]] = field(default_factory=list)
    webhook_logs: list[dict[str, object]] = field(default_factory=list)
    admin_logs: list[dict[str, object]] = field(default_factory=list)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        saved = {name: dict(getattr(self, name)) for name in _TRANSACTIONAL_TABLES}
        try:
            yield
        except BaseException:
            for name, rows in saved.items():
                setattr(self, name, rows)
            raise

    def _quiz_by_session(self, session_id: str) -> _QuizRow | None:
        for row in self.quizzes.values():
            if row.session_id == session_id:
                return row
        return None

    def _order_by_session(self, session_id: str) -> _OrderRow | None:
        for row in self.orders.values():
            if row.session_id == session_id:
                return row
        return None

    def _insert_quiz(self, *, session_id: str, fields: dict[str, object]) -> _QuizRow:
        row = _QuizRow(quiz_id=new_quiz_id(), session_id=session_id, fields=fields)
        self.quizzes[row.quiz_id] = row
        return row

    def _insert_order(self, row: _OrderRow) -> None:
        self.orders[row.order_id] = row

    def _order_row(self, order_id: str) -> _OrderRow:
        row = self.orders.get(order_id)
        if row is None:
            raise DomainNotFoundError(f"order not found: {order_id}")
        return row

    def _job_row(self, job_id: str) -> _JobRow:
        row = self.jobs.get(job_id)
        if row is None:
            raise DomainNotFoundError(f"job not found: {job_id}")
        return row

    def _song_row(self, song_id: str) -> _SongRow:
        row = self.songs.get(song_id)
        if row is None:
            raise DomainNotFoundError(f"song not found: {song_id}")
        return row

    def _retry_row(self, item_id: str) -> _RetryItemRow:
        row = self.retry_items.get(item_id)
        if row is None:
            raise DomainNotFoundError(f"retry item not found: {item_id}")
        return row

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
    ) -> CreateOrderOutcome:
        existing = self._order_by_session(session_id)
        if existing is not None:
            return CreateOrderOutcome(order_id=existing.order_id, quiz_id=existing.quiz_id, created=False)

        with self._transaction():
            quiz_row = self._quiz_by_session(session_id)
            if quiz_row is None:
                quiz_row = self._insert_quiz(session_id=session_id, fields=validate_quiz_payload(quiz))
            order_row = _OrderRow(
                order_id=new_order_id(),
                quiz_id=quiz_row.quiz_id,
                session_id=session_id,
                status=OrderStatus.PENDING,
                plan=Plan(plan),
                amount_cents=amount_cents,
                customer_email=customer_email.strip().lower(),
                customer_whatsapp=customer_whatsapp,
                payment_provider=payment_provider,
                transaction_id=transaction_id,
            )
            self._insert_order(order_row)
        return CreateOrderOutcome(order_id=order_row.order_id, quiz_id=quiz_row.quiz_id, created=True)

    async def upsert_quiz_by_session(self, *, session_id: str, quiz: dict[str, object]) -> str:
        fields = validate_quiz_payload(quiz)
        row = self._quiz_by_session(session_id)
        if row is None:
            return self._insert_quiz(session_id=session_id, fields=fields).quiz_id
        row.fields = fields
        return row.quiz_id

    async def get_order(self, *, order_id: str) -> OrderSnapshot | None:
        row = self.orders.get(order_id)
        return _order_snapshot(row) if row is not None else None

    async def get_quiz(self, *, quiz_id: str) -> QuizSnapshot | None:
        row = self.quizzes.get(quiz_id)
        if row is None:
            return None
        return quiz_snapshot(quiz_id=row.quiz_id, session_id=row.session_id, fields=row.fields, created_at=row.created_at)

    async def find_order_by_transaction(self, *, transaction_id: str) -> OrderSnapshot | None:
        for row in self.orders.values():
            if row.transaction_id == transaction_id:
                return _order_snapshot(row)
        return None

    async def find_latest_pending_order_by_email(self, *, email: str) -> OrderSnapshot | None:
        normalized = email.strip().lower()
        candidates = [
            row
            for row in self.orders.values()
            if row.customer_email == normalized and row.status == OrderStatus.PENDING
        ]
        if not candidates:
            return None
        return _order_snapshot(max(candidates, key=lambda row: row.created_at))

    async def find_latest_paid_order_by_email(self, *, email: str) -> OrderSnapshot | None:
        normalized = email.strip().lower()
        candidates = [
            row
            for row in self.orders.values()
            if row.customer_email == normalized and row.status == OrderStatus.PAID
        ]
        if not candidates:
            return None
        return _order_snapshot(max(candidates, key=lambda row: row.paid_at or row.created_at))

    async def mark_order_paid(
        self,
        *,
        order_id: str,
        payment_provider: str,
        transaction_id: str | None,
        payment_status: str,
        paid_at: datetime,
    ) -> bool:
        row = self._order_row(order_id)
        if row.status not in (OrderStatus.PENDING, OrderStatus.FAILED):
            return False
        row.status = OrderStatus.PAID
        row.paid_at = paid_at
        row.payment_provider = payment_provider
        row.payment_status = payment_status
        if transaction_id:
            row.transaction_id = transaction_id
        row.updated_at = _now()
        return True

    async def transition_order(self, *, order_id: str, from_state: OrderStatus, to_state: OrderStatus) -> OrderSnapshot:
        row = self._order_row(order_id)
        if row.status != from_state:
            raise DomainInvariantError(f"order {order_id} is {row.status}, expected {from_state}")
        ensure_transition(entity="order", from_state=from_state, to_state=to_state)
        row.status = to_state
        if from_state == OrderStatus.PAID:
            row.paid_at = None
        row.updated_at = _now()
        return _order_snapshot(row)

    async def complete_checkout_funnel(self, *, order_id: str) -> None:
        self._order_row(order_id).funnel_completed = True

    async def delete_order(self, *, order_id: str) -> bool:
        row = self.orders.pop(order_id, None)
        if row is None:
            return False
        job_ids = {job_id for job_id, job in self.jobs.items() if job.order_id == order_id}
        for job_id in job_ids:
            del self.jobs[job_id]
        self.approvals = {key: value for key, value in self.approvals.items() if value.order_id != order_id}
        self.songs = {key: value for key, value in self.songs.items() if value.order_id != order_id}
        self.generation_tasks = {
            key: value for key, value in self.generation_tasks.items() if value.order_id != order_id
        }
        if not any(other.quiz_id == row.quiz_id for other in self.orders.values()):
            self.quizzes.pop(row.quiz_id, None)
        return True

    async def delete_stale_pending_orders(self, *, created_before: datetime) -> int:
        stale = [
            row.order_id
            for row in self.orders.values()
            if row.status == OrderStatus.PENDING and row.created_at < created_before
        ]
        for order_id in stale:
            await self.delete_order(order_id=order_id)
        return len(stale)

    async def record_order_creation_log(
        self,
        *,
        session_id: str,
        status: str,
        inputs: dict[str, object],
        error: str | None = None,
        quiz_id: str | None = None,
        order_id: str | None = None,
    ) -> str:
        log_id = new_log_id()
        self.order_creation_logs.append(
            {
                "log_id": log_id,
                "session_id": session_id,
                "status": status,
                "inputs": inputs,
                "error": error,
                "quiz_id": quiz_id,
                "order_id": order_id,
            }
        )
        return log_id

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
    ) -> None:
        self.webhook_logs.append(
            {
                "event": event,
                "status": status,
                "strategy": strategy,
                "order_id": order_id,
                "order_found": order_found,
                "outcome": outcome,
                "payload": payload,
                "error": error,
            }
        )

    async def record_admin_log(
        self,
        *,
        actor: str,
        action: str,
        target_table: str,
        target_id: str | None,
        changes: dict[str, object],
    ) -> None:
        self.admin_logs.append(
            {
                "actor": actor,
                "action": action,
                "target_table": target_table,
                "target_id": target_id,
                "changes": changes,
            }
        )

    async def get_or_create_job(self, *, order_id: str, quiz_id: str) -> JobSnapshot:
        existing = [row for row in self.jobs.values() if row.order_id == order_id]
        if existing:
            return _job_snapshot(max(existing, key=lambda row: row.created_at))
        row = _JobRow(job_id=new_job_id(), order_id=order_id, quiz_id=quiz_id)
        self.jobs[row.job_id] = row
        return _job_snapshot(row)

    async def get_job(self, *, job_id: str) -> JobSnapshot | None:
        row = self.jobs.get(job_id)
        return _job_snapshot(row) if row is not None else None

    async def list_jobs_for_order(self, *, order_id: str) -> list[JobSnapshot]:
        rows = sorted((row for row in self.jobs.values() if row.order_id == order_id), key=lambda row: row.created_at)
        return [_job_snapshot(row) for row in rows]

    async def transition_job(
        self,
        *,
        job_id: str,
        from_states: tuple[JobStatus, ...],
        to_state: JobStatus,
        error_message: str | None = None,
    ) -> JobSnapshot:
        row = self._job_row(job_id)
        if row.status not in from_states:
            raise DomainInvariantError(f"job {job_id} is {row.status}, cannot move to {to_state}")
        ensure_transition(entity="job", from_state=row.status, to_state=to_state)
        if to_state in IN_FLIGHT_JOB_STATUSES and row.status not in IN_FLIGHT_JOB_STATUSES:
            holder = self._in_flight_job(row.order_id, exclude_job_id=job_id)
            if holder is not None:
                raise DomainConflictError(f"order {row.order_id} already has job {holder.job_id} in flight")
        row.status = to_state
        if to_state == JobStatus.GENERATING_AUDIO:
            # A fresh submission supersedes the previous task.
            row.task_id = None
        row.error_message = error_message
        row.updated_at = _now()
        return _job_snapshot(row)

    async def save_job_lyrics(self, *, job_id: str, title: str, lyrics: str) -> None:
        row = self._job_row(job_id)
        row.lyrics_title = title
        row.lyrics = lyrics
        row.updated_at = _now()

    def _in_flight_job(self, order_id: str, *, exclude_job_id: str) -> _JobRow | None:
        for row in self.jobs.values():
            if row.order_id == order_id and row.job_id != exclude_job_id and row.status in IN_FLIGHT_JOB_STATUSES:
                return row
        return None

    async def find_in_flight_sibling(self, *, order_id: str, exclude_job_id: str) -> JobSnapshot | None:
        row = self._in_flight_job(order_id, exclude_job_id=exclude_job_id)
        if row is None or not row.task_id:
            return None
        return _job_snapshot(row)

    async def set_job_task_id(self, *, job_id: str, task_id: str) -> bool:
        row = self._job_row(job_id)
        if row.task_id or row.status != JobStatus.GENERATING_AUDIO:
            return False
        row.task_id = task_id
        row.status = JobStatus.AUDIO_PROCESSING
        row.updated_at = _now()
        return True

    async def find_job_by_task_id(self, *, task_id: str) -> JobSnapshot | None:
        for row in self.jobs.values():
            if row.task_id == task_id:
                return _job_snapshot(row)
        return None

    async def claim_job_finalization(self, *, job_id: str) -> bool:
        row = self._job_row(job_id)
        if row.status not in (JobStatus.GENERATING_AUDIO, JobStatus.AUDIO_PROCESSING):
            return False
        row.status = JobStatus.FINALIZING
        row.updated_at = _now()
        return True

    async def complete_job(self, *, job_id: str, audio_url: str | None, completed_at: datetime) -> bool:
        row = self._job_row(job_id)
        if row.status != JobStatus.FINALIZING:
            return False
        row.status = JobStatus.COMPLETED
        row.audio_url = audio_url
        row.completed_at = completed_at
        row.error_message = None
        row.updated_at = _now()
        return True

    async def upsert_pending_approval(
        self,
        *,
        order_id: str,
        job_id: str,
        title: str,
        lyrics: str,
        validation: dict[str, object],
        expires_at: datetime,
    ) -> LyricsApprovalSnapshot:
        for row in self.approvals.values():
            if row.order_id == order_id and row.status == ApprovalStatus.PENDING:
                row.job_id = job_id
                row.lyrics_title = title
                row.lyrics = lyrics
                row.validation = validation
                row.expires_at = expires_at
                row.regeneration_count += 1
                row.updated_at = _now()
                return _approval_snapshot(row)
        regenerations = sum(1 for row in self.approvals.values() if row.order_id == order_id)
        row = _ApprovalRow(
            approval_id=new_approval_id(),
            order_id=order_id,
            job_id=job_id,
            status=ApprovalStatus.PENDING,
            lyrics_title=title,
            lyrics=lyrics,
            validation=validation,
            expires_at=expires_at,
            regeneration_count=regenerations,
        )
        self.approvals[row.approval_id] = row
        return _approval_snapshot(row)

    async def get_approval(self, *, approval_id: str) -> LyricsApprovalSnapshot | None:
        row = self.approvals.get(approval_id)
        return _approval_snapshot(row) if row is not None else None

    async def find_latest_approval_for_job(self, *, job_id: str) -> LyricsApprovalSnapshot | None:
        rows = [row for row in self.approvals.values() if row.job_id == job_id]
        if not rows:
            return None
        return _approval_snapshot(max(rows, key=lambda row: row.updated_at))

    async def decide_approval(
        self,
        *,
        approval_id: str,
        status: ApprovalStatus,
        voice: VoiceOverride | None = None,
    ) -> LyricsApprovalSnapshot:
        row = self.approvals.get(approval_id)
        if row is None:
            raise DomainNotFoundError(f"approval not found: {approval_id}")
        ensure_transition(entity="approval", from_state=row.status, to_state=status)
        row.status = status
        if voice is not None:
            row.voice = voice
        row.updated_at = _now()
        return _approval_snapshot(row)

    async def record_generation_task(self, *, task_id: str, job_id: str, order_id: str) -> None:
        if task_id in self.generation_tasks:
            return
        self.generation_tasks[task_id] = GenerationTaskSnapshot(
            task_id=task_id,
            job_id=job_id,
            order_id=order_id,
            created_at=_now(),
        )

    async def resolve_generation_task(self, *, task_id: str) -> GenerationTaskSnapshot | None:
        return self.generation_tasks.get(task_id)

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
    ) -> SongSnapshot:
        for existing in self.songs.values():
            if existing.job_id == job_id and existing.variant_number == variant_number:
                raise DomainConflictError(f"job {job_id} already has variant {variant_number}")
        row = _SongRow(
            song_id=new_song_id(),
            order_id=order_id,
            job_id=job_id,
            title=title,
            variant_number=variant_number,
            status=SongStatus.READY,
            audio_url=audio_url,
            cover_url=cover_url,
            lyrics=lyrics,
            provider_clip_id=provider_clip_id,
            task_id=task_id,
            release_at=release_at,
        )
        self.songs[row.song_id] = row
        return _song_snapshot(row)

    async def get_song(self, *, song_id: str) -> SongSnapshot | None:
        row = self.songs.get(song_id)
        return _song_snapshot(row) if row is not None else None

    async def list_songs_for_order(self, *, order_id: str) -> list[SongSnapshot]:
        rows = sorted(
            (row for row in self.songs.values() if row.order_id == order_id),
            key=lambda row: row.variant_number,
        )
        return [_song_snapshot(row) for row in rows]

    async def approve_song(self, *, song_id: str) -> SongSnapshot:
        row = self._song_row(song_id)
        ensure_transition(entity="song", from_state=row.status, to_state=SongStatus.APPROVED)
        row.status = SongStatus.APPROVED
        return _song_snapshot(row)

    async def release_song(self, *, song_id: str, released_at: datetime) -> SongSnapshot:
        row = self._song_row(song_id)
        if row.status == SongStatus.RELEASED:
            return _song_snapshot(row)
        if not row.audio_url:
            raise DomainInvariantError(f"song {song_id} has no media and cannot be released")
        ensure_transition(entity="song", from_state=row.status, to_state=SongStatus.RELEASED)
        row.status = SongStatus.RELEASED
        row.released_at = released_at
        row.release_at = released_at
        return _song_snapshot(row)

    async def list_due_songs(self, *, now: datetime) -> list[SongSnapshot]:
        rows = [
            row
            for row in self.songs.values()
            if row.status == SongStatus.APPROVED
            and row.audio_url
            and row.released_at is None
            and row.release_at is not None
            and row.release_at <= now
        ]
        rows.sort(key=lambda row: row.release_at or now)
        return [_song_snapshot(row) for row in rows]

    async def release_order_songs(self, *, order_id: str, released_at: datetime) -> list[str]:
        released: list[str] = []
        for row in self.songs.values():
            if row.order_id == order_id and row.status == SongStatus.APPROVED and row.audio_url:
                row.status = SongStatus.RELEASED
                row.released_at = released_at
                released.append(row.song_id)
        return released

    async def enqueue_retry_item(
        self,
        *,
        kind: RetryQueueKind,
        session_id: str | None,
        payload: dict[str, object],
        max_attempts: int,
        next_retry_at: datetime,
    ) -> RetryQueueItemSnapshot:
        row = _RetryItemRow(
            item_id=new_retry_item_id(),
            kind=kind,
            session_id=session_id,
            payload=payload,
            status=RetryQueueStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            next_retry_at=next_retry_at,
        )
        self.retry_items[row.item_id] = row
        return _retry_snapshot(row)

    async def get_retry_item(self, *, item_id: str) -> RetryQueueItemSnapshot | None:
        row = self.retry_items.get(item_id)
        return _retry_snapshot(row) if row is not None else None

    async def reclaim_stale_retry_items(self, *, claimed_before: datetime) -> int:
        reclaimed = 0
        for row in self.retry_items.values():
            if row.status != RetryQueueStatus.PROCESSING:
                continue
            if row.claimed_at is None or row.claimed_at < claimed_before:
                row.status = RetryQueueStatus.PENDING
                row.claimed_at = None
                row.updated_at = _now()
                reclaimed += 1
        return reclaimed

    async def list_due_retry_items(self, *, now: datetime, limit: int) -> list[RetryQueueItemSnapshot]:
        rows = [
            row
            for row in self.retry_items.values()
            if row.status == RetryQueueStatus.PENDING and row.next_retry_at <= now
        ]
        rows.sort(key=lambda row: row.created_at)
        return [_retry_snapshot(row) for row in rows[:limit]]

    async def claim_retry_item(self, *, item_id: str, claimed_at: datetime) -> bool:
        row = self._retry_row(item_id)
        if row.status != RetryQueueStatus.PENDING:
            return False
        row.status = RetryQueueStatus.PROCESSING
        row.claimed_at = claimed_at
        row.updated_at = _now()
        return True

    async def complete_retry_item(self, *, item_id: str) -> None:
        row = self._retry_row(item_id)
        ensure_transition(entity="retry_queue", from_state=row.status, to_state=RetryQueueStatus.COMPLETED)
        row.status = RetryQueueStatus.COMPLETED
        row.claimed_at = None
        row.updated_at = _now()

    async def reschedule_retry_item(
        self,
        *,
        item_id: str,
        attempts: int,
        next_retry_at: datetime,
        last_error: str,
    ) -> None:
        row = self._retry_row(item_id)
        ensure_transition(entity="retry_queue", from_state=row.status, to_state=RetryQueueStatus.PENDING)
        row.status = RetryQueueStatus.PENDING
        row.attempts = attempts
        row.next_retry_at = next_retry_at
        row.last_error = last_error
        row.claimed_at = None
        row.updated_at = _now()

    async def fail_retry_item(self, *, item_id: str, attempts: int, last_error: str) -> None:
        row = self._retry_row(item_id)
        ensure_transition(entity="retry_queue", from_state=row.status, to_state=RetryQueueStatus.FAILED)
        row.status = RetryQueueStatus.FAILED
        row.attempts = attempts
        row.last_error = last_error
        row.claimed_at = None
        row.updated_at = _now()

    async def find_successful_notification(
        self,
        *,
        order_id: str,
        notification_type: NotificationType,
    ) -> NotificationLogEntry | None:
        for entry in self.notifications:
            if entry.order_id == order_id and entry.notification_type == notification_type and entry.status == "sent":
                return entry
        return None

    async def record_notification(
        self,
        *,
        order_id: str,
        notification_type: NotificationType,
        status: str,
        attempts: int,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        self.notifications.append(
            NotificationLogEntry(
                order_id=order_id,
                notification_type=notification_type,
                status=status,
                attempts=attempts,
                provider_message_id=provider_message_id,
                error=error,
                created_at=_now(),
            )
        )


def _order_snapshot(row: _OrderRow) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=row.order_id,
        quiz_id=row.quiz_id,
        session_id=row.session_id,
        status=row.status,
        plan=row.plan,
        amount_cents=row.amount_cents,
        customer_email=row.customer_email,
        customer_whatsapp=row.customer_whatsapp,
        payment_provider=row.payment_provider,
        transaction_id=row.transaction_id,
        payment_status=row.payment_status,
        paid_at=row.paid_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _job_snapshot(row: _JobRow) -> JobSnapshot:
    return JobSnapshot(
        job_id=row.job_id,
        order_id=row.order_id,
        quiz_id=row.quiz_id,
        status=row.status,
        lyrics_title=row.lyrics_title,
        lyrics=row.lyrics,
        task_id=row.task_id,
        audio_url=row.audio_url,
        error_message=row.error_message,
        completed_at=row.completed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _approval_snapshot(row: _ApprovalRow) -> LyricsApprovalSnapshot:
    return LyricsApprovalSnapshot(
        approval_id=row.approval_id,
        order_id=row.order_id,
        job_id=row.job_id,
        status=row.status,
        regeneration_count=row.regeneration_count,
        expires_at=row.expires_at,
        voice=row.voice,
        lyrics_title=row.lyrics_title,
        lyrics=row.lyrics,
        validation=dict(row.validation),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _song_snapshot(row: _SongRow) -> SongSnapshot:
    return SongSnapshot(
        song_id=row.song_id,
        order_id=row.order_id,
        job_id=row.job_id,
        title=row.title,
        variant_number=row.variant_number,
        status=row.status,
        audio_url=row.audio_url,
        cover_url=row.cover_url,
        lyrics=row.lyrics,
        provider_clip_id=row.provider_clip_id,
        task_id=row.task_id,
        release_at=row.release_at,
        released_at=row.released_at,
        created_at=row.created_at,
    )


def _retry_snapshot(row: _RetryItemRow) -> RetryQueueItemSnapshot:
    return RetryQueueItemSnapshot(
        item_id=row.item_id,
        kind=row.kind,
        payload=dict(row.payload),
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_retry_at=row.next_retry_at,
        session_id=row.session_id,
        last_error=row.last_error,
        claimed_at=row.claimed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
