from __future__ import annotations

from dataclasses import dataclass

from app.domain.errors import DomainInvariantError


@dataclass(frozen=True)
class RetryQueueLifecycle:
    batch_size: int = 50
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 300_000
    local_attempts: int = 3
    lease_seconds: int = 300
    item_delay_ms: int = 100


@dataclass(frozen=True)
class LyricsLifecycle:
    max_attempts: int = 3
    temperature: float = 0.7
    attempt_pause_ms: int = 500
    approval_ttl_hours: int = 72


ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "failed", "cancelled", "refunded"},
    # Leaving paid is only possible through unmark (pending) or refund.
    "paid": {"pending", "refunded"},
    "failed": {"pending", "paid", "cancelled", "refunded"},
    "refunded": set(),
    "cancelled": {"refunded"},
}

JOB_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "failed"},
    "processing": {"processing", "pending", "generating_audio", "failed", "retry_pending"},
    "retry_pending": {"processing", "generating_audio", "failed"},
    "generating_audio": {"audio_processing", "finalizing", "failed"},
    "audio_processing": {"finalizing", "failed"},
    "finalizing": {"completed", "failed"},
    "failed": {"processing", "retry_pending", "generating_audio"},
    "completed": set(),
}

APPROVAL_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected"},
    "approved": set(),
    "rejected": set(),
}

SONG_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"ready"},
    "ready": {"approved", "released"},
    "approved": {"released"},
    "released": set(),
}

RETRY_QUEUE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"completed", "pending", "failed"},
    "completed": set(),
    "failed": set(),
}

TRANSITIONS_BY_ENTITY: dict[str, dict[str, set[str]]] = {
    "order": ORDER_TRANSITIONS,
    "job": JOB_TRANSITIONS,
    "approval": APPROVAL_TRANSITIONS,
    "song": SONG_TRANSITIONS,
    "retry_queue": RETRY_QUEUE_TRANSITIONS,
}


def can_transition(*, entity: str, from_state: str, to_state: str) -> bool:
    transitions = TRANSITIONS_BY_ENTITY[entity]
    return to_state in transitions.get(from_state, set())


def ensure_transition(*, entity: str, from_state: str, to_state: str) -> None:
    if not can_transition(entity=entity, from_state=from_state, to_state=to_state):
        raise DomainInvariantError(f"invalid {entity} transition: {from_state} -> {to_state}")
