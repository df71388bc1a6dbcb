from __future__ import annotations

from dataclasses import dataclass
import json
from datetime import datetime
from typing import Any

import asyncpg

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
from app.repositories.sql_loader import load_sql


SQL_FIND_QUIZ_BY_SESSION = load_sql("find_quiz_by_session.sql")
SQL_GET_QUIZ = load_sql("get_quiz.sql")
SQL_INSERT_QUIZ = load_sql("insert_quiz.sql")
SQL_UPSERT_QUIZ = load_sql("upsert_quiz.sql")
SQL_GET_ORDER = load_sql("get_order.sql")
SQL_LOCK_ORDER = load_sql("lock_order.sql")
SQL_FIND_ORDER_BY_SESSION = load_sql("find_order_by_session.sql")
SQL_FIND_ORDER_BY_TRANSACTION = load_sql("find_order_by_transaction.sql")
SQL_FIND_PENDING_ORDER_BY_EMAIL = load_sql("find_pending_order_by_email.sql")
SQL_FIND_PAID_ORDER_BY_EMAIL = load_sql("find_paid_order_by_email.sql")
SQL_INSERT_ORDER = load_sql("insert_order.sql")
SQL_MARK_ORDER_PAID = load_sql("mark_order_paid.sql")
SQL_TRANSITION_ORDER = load_sql("transition_order.sql")
SQL_COMPLETE_CHECKOUT_FUNNEL = load_sql("complete_checkout_funnel.sql")
SQL_DELETE_ORDER = load_sql("delete_order.sql")
SQL_DELETE_ORPHAN_QUIZ = load_sql("delete_orphan_quiz.sql")
SQL_LIST_STALE_PENDING_ORDERS = load_sql("list_stale_pending_orders.sql")
SQL_INSERT_ORDER_CREATION_LOG = load_sql("insert_order_creation_log.sql")
SQL_INSERT_WEBHOOK_LOG = load_sql("insert_webhook_log.sql")
SQL_INSERT_ADMIN_LOG = load_sql("insert_admin_log.sql")
SQL_GET_JOB = load_sql("get_job.sql")
SQL_GET_JOB_FOR_UPDATE = load_sql("get_job_for_update.sql")
SQL_FIND_LATEST_JOB_FOR_ORDER = load_sql("find_latest_job_for_order.sql")
SQL_LIST_JOBS_FOR_ORDER = load_sql("list_jobs_for_order.sql")
SQL_INSERT_JOB = load_sql("insert_job.sql")
SQL_TRANSITION_JOB = load_sql("transition_job.sql")
SQL_SAVE_JOB_LYRICS = load_sql("save_job_lyrics.sql")
SQL_FIND_IN_FLIGHT_SIBLING = load_sql("find_in_flight_sibling.sql")
SQL_SET_JOB_TASK_ID = load_sql("set_job_task_id.sql")
SQL_FIND_JOB_BY_TASK_ID = load_sql("find_job_by_task_id.sql")
SQL_CLAIM_JOB_FINALIZATION = load_sql("claim_job_finalization.sql")
SQL_COMPLETE_JOB = load_sql("complete_job.sql")
SQL_FIND_PENDING_APPROVAL_FOR_UPDATE = load_sql("find_pending_approval_for_update.sql")
SQL_UPDATE_PENDING_APPROVAL = load_sql("update_pending_approval.sql")
SQL_COUNT_ORDER_APPROVALS = load_sql("count_order_approvals.sql")
SQL_INSERT_APPROVAL = load_sql("insert_approval.sql")
SQL_GET_APPROVAL = load_sql("get_approval.sql")
SQL_FIND_LATEST_APPROVAL_FOR_JOB = load_sql("find_latest_approval_for_job.sql")
SQL_DECIDE_APPROVAL = load_sql("decide_approval.sql")
SQL_INSERT_GENERATION_TASK = load_sql("insert_generation_task.sql")
SQL_GET_GENERATION_TASK = load_sql("get_generation_task.sql")
SQL_INSERT_SONG = load_sql("insert_song.sql")
SQL_GET_SONG = load_sql("get_song.sql")
SQL_LIST_SONGS_FOR_ORDER = load_sql("list_songs_for_order.sql")
SQL_APPROVE_SONG = load_sql("approve_song.sql")
SQL_RELEASE_SONG = load_sql("release_song.sql")
SQL_LIST_DUE_SONGS = load_sql("list_due_songs.sql")
SQL_RELEASE_ORDER_SONGS = load_sql("release_order_songs.sql")
SQL_INSERT_RETRY_ITEM = load_sql("insert_retry_item.sql")
SQL_GET_RETRY_ITEM = load_sql("get_retry_item.sql")
SQL_RECLAIM_STALE_RETRY_ITEMS = load_sql("reclaim_stale_retry_items.sql")
SQL_LIST_DUE_RETRY_ITEMS = load_sql("list_due_retry_items.sql")
SQL_CLAIM_RETRY_ITEM = load_sql("claim_retry_item.sql")
SQL_COMPLETE_RETRY_ITEM = load_sql("complete_retry_item.sql")
SQL_RESCHEDULE_RETRY_ITEM = load_sql("reschedule_retry_item.sql")
SQL_FAIL_RETRY_ITEM = load_sql("fail_retry_item.sql")
SQL_FIND_SUCCESSFUL_NOTIFICATION = load_sql("find_successful_notification.sql")
SQL_INSERT_NOTIFICATION_LOG = load_sql("insert_notification_log.sql")

_QUIZ_COLUMNS = (
    "about_who",
    "relationship",
    "occasion",
    "style",
    "language",
    "desired_tone",
    "message",
    "qualities",
    "memories",
    "key_moments",
    "vocal_gender",
)


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            for type_name in ("json", "jsonb"):
                await conn.set_type_codec(
                    type_name,
                    encoder=json.dumps,
                    decoder=json.loads,
                    schema="pg_catalog",
                )

        self.pool = await asyncpg.create_pool(
            dsn=self.dsn,
            min_size=1,
            max_size=5,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresOrderRepository:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

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
        fields = validate_quiz_payload(quiz)
        pool = self._pool()
        async with pool.acquire() as conn:
            for _ in range(2):
                try:
                    async with conn.transaction():
                        existing = await conn.fetchrow(SQL_FIND_ORDER_BY_SESSION, session_id)
                        if existing is not None:
                            return CreateOrderOutcome(
                                order_id=existing["id"],
                                quiz_id=existing["quiz_id"],
                                created=False,
                            )
                        quiz_row = await conn.fetchrow(SQL_FIND_QUIZ_BY_SESSION, session_id)
                        if quiz_row is not None:
                            quiz_id = quiz_row["id"]
                        else:
                            quiz_id = await conn.fetchval(
                                SQL_INSERT_QUIZ,
                                new_quiz_id(),
                                session_id,
                                *(fields[name] for name in _QUIZ_COLUMNS),
                            )
                        order_id = await conn.fetchval(
                            SQL_INSERT_ORDER,
                            new_order_id(),
                            quiz_id,
                            session_id,
                            str(Plan(plan)),
                            amount_cents,
                            customer_email.strip().lower(),
                            customer_whatsapp,
                            payment_provider,
                            transaction_id,
                        )
                        if order_id is None:
                            raise DomainInvariantError("failed to create order")
                        return CreateOrderOutcome(order_id=order_id, quiz_id=quiz_id, created=True)
                except Exception as exc:
                    # A concurrent request with the same session won the race; the next pass returns its order.
                    if _is_unique_violation(exc):
                        continue
                    raise
        raise DomainInvariantError("failed to create order for session")

    async def upsert_quiz_by_session(self, *, session_id: str, quiz: dict[str, object]) -> str:
        fields = validate_quiz_payload(quiz)
        pool = self._pool()
        async with pool.acquire() as conn:
            quiz_id = await conn.fetchval(
                SQL_UPSERT_QUIZ,
                new_quiz_id(),
                session_id,
                *(fields[name] for name in _QUIZ_COLUMNS),
            )
        if quiz_id is None:
            raise DomainInvariantError("quiz upsert returned no row")
        return quiz_id

    async def get_order(self, *, order_id: str) -> OrderSnapshot | None:
        return await self._fetch_order(SQL_GET_ORDER, order_id)

    async def get_quiz(self, *, quiz_id: str) -> QuizSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_QUIZ, quiz_id)
        if row is None:
            return None
        return quiz_snapshot(
            quiz_id=row["id"],
            session_id=row["session_id"],
            fields={name: row[name] for name in _QUIZ_COLUMNS},
            created_at=row["created_at"],
        )

    async def find_order_by_transaction(self, *, transaction_id: str) -> OrderSnapshot | None:
        return await self._fetch_order(SQL_FIND_ORDER_BY_TRANSACTION, transaction_id)

    async def find_latest_pending_order_by_email(self, *, email: str) -> OrderSnapshot | None:
        return await self._fetch_order(SQL_FIND_PENDING_ORDER_BY_EMAIL, email.strip().lower())

    async def find_latest_paid_order_by_email(self, *, email: str) -> OrderSnapshot | None:
        return await self._fetch_order(SQL_FIND_PAID_ORDER_BY_EMAIL, email.strip().lower())

    async def _fetch_order(self, query: str, *args: object) -> OrderSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return _order_from_row(row) if row is not None else None

    async def mark_order_paid(
        self,
        *,
        order_id: str,
        payment_provider: str,
        transaction_id: str | None,
        payment_status: str,
        paid_at: datetime,
    ) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(
                SQL_MARK_ORDER_PAID,
                order_id,
                paid_at,
                payment_provider,
                transaction_id,
                payment_status,
            )
        return updated is not None

    async def transition_order(self, *, order_id: str, from_state: OrderStatus, to_state: OrderStatus) -> OrderSnapshot:
        ensure_transition(entity="order", from_state=from_state, to_state=to_state)
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_TRANSITION_ORDER, order_id, str(from_state), str(to_state))
        if row is None:
            raise DomainInvariantError(f"order {order_id} is not {from_state}")
        return _order_from_row(row)

    async def complete_checkout_funnel(self, *, order_id: str) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_COMPLETE_CHECKOUT_FUNNEL, order_id)

    async def delete_order(self, *, order_id: str) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                quiz_id = await conn.fetchval(SQL_DELETE_ORDER, order_id)
                if quiz_id is None:
                    return False
                await conn.execute(SQL_DELETE_ORPHAN_QUIZ, quiz_id)
        return True

    async def delete_stale_pending_orders(self, *, created_before: datetime) -> int:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_STALE_PENDING_ORDERS, created_before)
        deleted = 0
        for row in rows:
            if await self.delete_order(order_id=row["id"]):
                deleted += 1
        return deleted

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
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_INSERT_ORDER_CREATION_LOG, log_id, session_id, status, inputs, error, quiz_id, order_id)
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
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(
                SQL_INSERT_WEBHOOK_LOG,
                event,
                status,
                strategy,
                order_id,
                order_found,
                outcome,
                payload,
                error,
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
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_INSERT_ADMIN_LOG, actor, action, target_table, target_id, changes)

    async def get_or_create_job(self, *, order_id: str, quiz_id: str) -> JobSnapshot:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serializes job creation per order.
                await conn.fetchval(SQL_LOCK_ORDER, order_id)
                row = await conn.fetchrow(SQL_FIND_LATEST_JOB_FOR_ORDER, order_id)
                if row is None:
                    row = await conn.fetchrow(SQL_INSERT_JOB, new_job_id(), order_id, quiz_id)
        if row is None:
            raise DomainInvariantError("failed to create job")
        return _job_from_row(row)

    async def get_job(self, *, job_id: str) -> JobSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_JOB, job_id)
        return _job_from_row(row) if row is not None else None

    async def list_jobs_for_order(self, *, order_id: str) -> list[JobSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_JOBS_FOR_ORDER, order_id)
        return [_job_from_row(row) for row in rows]

    async def transition_job(
        self,
        *,
        job_id: str,
        from_states: tuple[JobStatus, ...],
        to_state: JobStatus,
        error_message: str | None = None,
    ) -> JobSnapshot:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(SQL_GET_JOB_FOR_UPDATE, job_id)
                if current is None:
                    raise DomainNotFoundError(f"job not found: {job_id}")
                status = current["status"]
                if status not in from_states:
                    raise DomainInvariantError(f"job {job_id} is {status}, cannot move to {to_state}")
                ensure_transition(entity="job", from_state=status, to_state=to_state)
                try:
                    row = await conn.fetchrow(SQL_TRANSITION_JOB, job_id, status, str(to_state), error_message)
                except Exception as exc:
                    if _is_unique_violation(exc):
                        raise DomainConflictError(f"order {current['order_id']} already has a job in flight") from exc
                    raise
        if row is None:
            raise DomainInvariantError("job transition rejected")
        return _job_from_row(row)

    async def save_job_lyrics(self, *, job_id: str, title: str, lyrics: str) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_SAVE_JOB_LYRICS, job_id, title, lyrics)
        if updated is None:
            raise DomainNotFoundError(f"job not found: {job_id}")

    async def find_in_flight_sibling(self, *, order_id: str, exclude_job_id: str) -> JobSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_IN_FLIGHT_SIBLING, order_id, exclude_job_id)
        return _job_from_row(row) if row is not None else None

    async def set_job_task_id(self, *, job_id: str, task_id: str) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_SET_JOB_TASK_ID, job_id, task_id)
        return updated is not None

    async def find_job_by_task_id(self, *, task_id: str) -> JobSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_JOB_BY_TASK_ID, task_id)
        return _job_from_row(row) if row is not None else None

    async def claim_job_finalization(self, *, job_id: str) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_CLAIM_JOB_FINALIZATION, job_id)
        return updated is not None

    async def complete_job(self, *, job_id: str, audio_url: str | None, completed_at: datetime) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_COMPLETE_JOB, job_id, audio_url, completed_at)
        return updated is not None

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
        pool = self._pool()
        async with pool.acquire() as conn:
            for _ in range(2):
                try:
                    async with conn.transaction():
                        pending = await conn.fetchrow(SQL_FIND_PENDING_APPROVAL_FOR_UPDATE, order_id)
                        if pending is not None:
                            row = await conn.fetchrow(
                                SQL_UPDATE_PENDING_APPROVAL,
                                pending["id"],
                                job_id,
                                title,
                                lyrics,
                                validation,
                                expires_at,
                            )
                        else:
                            regenerations = await conn.fetchval(SQL_COUNT_ORDER_APPROVALS, order_id)
                            row = await conn.fetchrow(
                                SQL_INSERT_APPROVAL,
                                new_approval_id(),
                                order_id,
                                job_id,
                                int(regenerations or 0),
                                expires_at,
                                title,
                                lyrics,
                                validation,
                            )
                    if row is None:
                        raise DomainInvariantError("approval upsert returned no row")
                    return _approval_from_row(row)
                except Exception as exc:
                    # Partial unique index on pending approvals; retry as an update.
                    if _is_unique_violation(exc):
                        continue
                    raise
        raise DomainInvariantError("failed to upsert pending approval")

    async def get_approval(self, *, approval_id: str) -> LyricsApprovalSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_APPROVAL, approval_id)
        return _approval_from_row(row) if row is not None else None

    async def find_latest_approval_for_job(self, *, job_id: str) -> LyricsApprovalSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_LATEST_APPROVAL_FOR_JOB, job_id)
        return _approval_from_row(row) if row is not None else None

    async def decide_approval(
        self,
        *,
        approval_id: str,
        status: ApprovalStatus,
        voice: VoiceOverride | None = None,
    ) -> LyricsApprovalSnapshot:
        ensure_transition(entity="approval", from_state=ApprovalStatus.PENDING, to_state=status)
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_DECIDE_APPROVAL,
                approval_id,
                str(status),
                str(voice) if voice is not None else None,
            )
        if row is None:
            existing = await self.get_approval(approval_id=approval_id)
            if existing is None:
                raise DomainNotFoundError(f"approval not found: {approval_id}")
            raise DomainInvariantError(f"invalid approval transition: {existing.status} -> {status}")
        return _approval_from_row(row)

    async def record_generation_task(self, *, task_id: str, job_id: str, order_id: str) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_INSERT_GENERATION_TASK, task_id, job_id, order_id)

    async def resolve_generation_task(self, *, task_id: str) -> GenerationTaskSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_GENERATION_TASK, task_id)
        if row is None:
            return None
        return GenerationTaskSnapshot(
            task_id=row["task_id"],
            job_id=row["job_id"],
            order_id=row["order_id"],
            created_at=row["created_at"],
        )

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
        pool = self._pool()
        async with pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    SQL_INSERT_SONG,
                    new_song_id(),
                    order_id,
                    job_id,
                    title,
                    variant_number,
                    audio_url,
                    cover_url,
                    lyrics,
                    provider_clip_id,
                    task_id,
                    release_at,
                )
            except Exception as exc:
                if _is_unique_violation(exc):
                    raise DomainConflictError(f"job {job_id} already has variant {variant_number}") from exc
                raise
        if row is None:
            raise DomainInvariantError("failed to create song")
        return _song_from_row(row)

    async def get_song(self, *, song_id: str) -> SongSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_SONG, song_id)
        return _song_from_row(row) if row is not None else None

    async def list_songs_for_order(self, *, order_id: str) -> list[SongSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_SONGS_FOR_ORDER, order_id)
        return [_song_from_row(row) for row in rows]

    async def approve_song(self, *, song_id: str) -> SongSnapshot:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_APPROVE_SONG, song_id)
        if row is None:
            existing = await self.get_song(song_id=song_id)
            if existing is None:
                raise DomainNotFoundError(f"song not found: {song_id}")
            raise DomainInvariantError(f"invalid song transition: {existing.status} -> approved")
        return _song_from_row(row)

    async def release_song(self, *, song_id: str, released_at: datetime) -> SongSnapshot:
        existing = await self.get_song(song_id=song_id)
        if existing is None:
            raise DomainNotFoundError(f"song not found: {song_id}")
        if existing.status == SongStatus.RELEASED:
            return existing
        if not existing.audio_url:
            raise DomainInvariantError(f"song {song_id} has no media and cannot be released")
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_RELEASE_SONG, song_id, released_at)
        if row is None:
            raise DomainInvariantError(f"song {song_id} release rejected")
        return _song_from_row(row)

    async def list_due_songs(self, *, now: datetime) -> list[SongSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DUE_SONGS, now)
        return [_song_from_row(row) for row in rows]

    async def release_order_songs(self, *, order_id: str, released_at: datetime) -> list[str]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_RELEASE_ORDER_SONGS, order_id, released_at)
        return [row["id"] for row in rows]

    async def enqueue_retry_item(
        self,
        *,
        kind: RetryQueueKind,
        session_id: str | None,
        payload: dict[str, object],
        max_attempts: int,
        next_retry_at: datetime,
    ) -> RetryQueueItemSnapshot:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_INSERT_RETRY_ITEM,
                new_retry_item_id(),
                str(kind),
                session_id,
                payload,
                max_attempts,
                next_retry_at,
            )
        if row is None:
            raise DomainInvariantError("failed to enqueue retry item")
        return _retry_item_from_row(row)

    async def get_retry_item(self, *, item_id: str) -> RetryQueueItemSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_RETRY_ITEM, item_id)
        return _retry_item_from_row(row) if row is not None else None

    async def reclaim_stale_retry_items(self, *, claimed_before: datetime) -> int:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_RECLAIM_STALE_RETRY_ITEMS, claimed_before)
        return len(rows)

    async def list_due_retry_items(self, *, now: datetime, limit: int) -> list[RetryQueueItemSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DUE_RETRY_ITEMS, now, limit)
        return [_retry_item_from_row(row) for row in rows]

    async def claim_retry_item(self, *, item_id: str, claimed_at: datetime) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            claimed = await conn.fetchval(SQL_CLAIM_RETRY_ITEM, item_id, claimed_at)
        return claimed is not None

    async def complete_retry_item(self, *, item_id: str) -> None:
        await self._finish_retry_item(SQL_COMPLETE_RETRY_ITEM, item_id)

    async def reschedule_retry_item(
        self,
        *,
        item_id: str,
        attempts: int,
        next_retry_at: datetime,
        last_error: str,
    ) -> None:
        await self._finish_retry_item(SQL_RESCHEDULE_RETRY_ITEM, item_id, attempts, next_retry_at, last_error)

    async def fail_retry_item(self, *, item_id: str, attempts: int, last_error: str) -> None:
        await self._finish_retry_item(SQL_FAIL_RETRY_ITEM, item_id, attempts, last_error)

    async def _finish_retry_item(self, query: str, item_id: str, *args: object) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(query, item_id, *args)
        if updated is None:
            raise DomainInvariantError(f"retry item {item_id} is not processing")

    async def find_successful_notification(
        self,
        *,
        order_id: str,
        notification_type: NotificationType,
    ) -> NotificationLogEntry | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_SUCCESSFUL_NOTIFICATION, order_id, str(notification_type))
        if row is None:
            return None
        return NotificationLogEntry(
            order_id=row["order_id"],
            notification_type=NotificationType(row["notification_type"]),
            status=row["status"],
            attempts=row["attempts"],
            provider_message_id=row["provider_message_id"],
            error=row["error"],
            created_at=row["created_at"],
        )

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
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(
                SQL_INSERT_NOTIFICATION_LOG,
                order_id,
                str(notification_type),
                status,
                attempts,
                provider_message_id,
                error,
            )


def _order_from_row(row: Any) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=row["id"],
        quiz_id=row["quiz_id"],
        session_id=row["session_id"],
        status=OrderStatus(row["status"]),
        plan=Plan(row["plan"]),
        amount_cents=row["amount_cents"],
        customer_email=row["customer_email"],
        customer_whatsapp=row["customer_whatsapp"],
        payment_provider=row["payment_provider"],
        transaction_id=row["transaction_id"],
        payment_status=row["payment_status"],
        paid_at=row["paid_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _job_from_row(row: Any) -> JobSnapshot:
    return JobSnapshot(
        job_id=row["id"],
        order_id=row["order_id"],
        quiz_id=row["quiz_id"],
        status=JobStatus(row["status"]),
        lyrics_title=row["lyrics_title"],
        lyrics=row["lyrics"],
        task_id=row["task_id"],
        audio_url=row["audio_url"],
        error_message=row["error_message"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _approval_from_row(row: Any) -> LyricsApprovalSnapshot:
    voice = row["voice"]
    return LyricsApprovalSnapshot(
        approval_id=row["id"],
        order_id=row["order_id"],
        job_id=row["job_id"],
        status=ApprovalStatus(row["status"]),
        regeneration_count=row["regeneration_count"],
        expires_at=row["expires_at"],
        voice=VoiceOverride(voice) if voice else None,
        lyrics_title=row["lyrics_title"],
        lyrics=row["lyrics"],
        validation=_json_object(row["validation"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _song_from_row(row: Any) -> SongSnapshot:
    return SongSnapshot(
        song_id=row["id"],
        order_id=row["order_id"],
        job_id=row["job_id"],
        title=row["title"],
        variant_number=row["variant_number"],
        status=SongStatus(row["status"]),
        audio_url=row["audio_url"],
        cover_url=row["cover_url"],
        lyrics=row["lyrics"],
        provider_clip_id=row["provider_clip_id"],
        task_id=row["task_id"],
        release_at=row["release_at"],
        released_at=row["released_at"],
        created_at=row["created_at"],
    )


def _retry_item_from_row(row: Any) -> RetryQueueItemSnapshot:
    return RetryQueueItemSnapshot(
        item_id=row["id"],
        kind=RetryQueueKind(row["kind"]),
        payload=_json_object(row["payload"]),
        status=RetryQueueStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        next_retry_at=row["next_retry_at"],
        session_id=row["session_id"],
        last_error=row["last_error"],
        claimed_at=row["claimed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}
