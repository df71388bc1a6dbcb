from __future__ import annotations

import asyncio

import pytest

from app.clients.stub import StubEmailClient
from app.domain.dto import NotificationRequest
from app.domain.errors import DomainDependencyError
from app.domain.models import NotificationType
from app.domain.use_cases.notifications import NotificationDispatcher
from app.lib.resilience import RetryPolicy
from app.repositories.stub import InMemoryOrderRepository
from app.services.background import BackgroundRunner
from tests.unit.domain_seed import no_sleep, notifications_for, notifier_for


def _request(recipient: str = "a@b.com") -> NotificationRequest:
    return NotificationRequest(
        order_id="ord_1",
        notification_type=NotificationType.SONG_READY,
        recipient=recipient,
        variables={"song_count": 2},
    )


class _FlakyEmailClient(StubEmailClient):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def send(self, *, recipient: str, template: str, variables: dict[str, object]) -> str | None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise DomainDependencyError("mail relay unavailable", status_code=503)
        return await super().send(recipient=recipient, template=template, variables=variables)


@pytest.mark.unit
def test_notification_is_sent_once_per_order_and_type() -> None:
    repository = InMemoryOrderRepository()
    email = StubEmailClient()
    notifier = notifier_for(repository, email)

    async def _run() -> None:
        first = await notifier.dispatch(_request())
        second = await notifier.dispatch(_request())
        assert first.sent is True
        assert first.provider_message_id == "msg:1"
        assert second.sent is False
        assert second.already_sent is True
        assert second.provider_message_id == "msg:1"

    asyncio.run(_run())
    assert len(email.sent) == 1
    assert email.sent[0]["variables"] == {"order_id": "ord_1", "song_count": 2}
    assert [entry.status for entry in repository.notifications] == ["sent"]


@pytest.mark.unit
def test_transient_send_failure_is_retried() -> None:
    repository = InMemoryOrderRepository()
    email = _FlakyEmailClient(failures=2)

    result = asyncio.run(notifier_for(repository, email).dispatch(_request()))

    assert result.sent is True
    assert result.attempts == 3
    assert repository.notifications[-1].attempts == 3


@pytest.mark.unit
def test_exhausted_retries_are_recorded_as_failure() -> None:
    repository = InMemoryOrderRepository()
    email = _FlakyEmailClient(failures=10)
    notifier = NotificationDispatcher(
        repository=repository,
        email=email,
        policy=RetryPolicy(max_attempts=2, initial_delay_ms=10),
        sleep=no_sleep,
    )

    result = asyncio.run(notifier.dispatch(_request()))

    assert result.sent is False
    assert result.attempts == 2
    assert result.error == "mail relay unavailable"
    assert repository.notifications[-1].status == "failed"

    # A failed entry does not block a later send.
    email.failures = 0
    again = asyncio.run(notifier.dispatch(_request()))
    assert again.sent is True


@pytest.mark.unit
def test_missing_recipient_fails_without_sending() -> None:
    repository = InMemoryOrderRepository()
    email = StubEmailClient()

    result = asyncio.run(notifier_for(repository, email).dispatch(_request(recipient="")))

    assert result.sent is False
    assert result.error == "recipient is missing"
    assert email.sent == []
    assert repository.notifications[-1].attempts == 0


@pytest.mark.unit
def test_dedup_lookup_failure_is_reported_not_raised() -> None:
    class _BrokenLogRepository(InMemoryOrderRepository):
        async def find_successful_notification(self, *, order_id: str, notification_type: NotificationType) -> None:
            del order_id, notification_type
            raise RuntimeError("notification_log unavailable")

    email = StubEmailClient()

    result = asyncio.run(notifier_for(_BrokenLogRepository(), email).dispatch(_request()))

    assert result.sent is False
    assert "notification_log unavailable" in (result.error or "")
    assert email.sent == []


@pytest.mark.unit
def test_scheduled_notification_is_sent_off_the_caller_path() -> None:
    repository = InMemoryOrderRepository()
    email = StubEmailClient()
    runner = BackgroundRunner()
    scheduler = notifications_for(repository, runner, email)

    async def _run() -> None:
        scheduler.schedule(_request())
        assert email.sent == []
        assert runner.pending == 1
        await runner.drain()

    asyncio.run(_run())
    assert len(email.sent) == 1
    assert repository.notifications[-1].status == "sent"
