from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from app.domain.contracts import EmailClient, LLMClient, MediaClient, OrderRepository, StorageClient, SynthesisClient
from app.domain.use_cases.notifications import NotificationDispatcher, NotificationScheduler
from app.services.background import BackgroundRunner
from app.services.settings import AppSettings


@dataclass(frozen=True)
class ApiDeps:
    repository: OrderRepository
    settings: AppSettings
    llm: LLMClient
    synthesis: SynthesisClient
    media: MediaClient
    storage: StorageClient
    email: EmailClient
    background: BackgroundRunner = field(default_factory=BackgroundRunner)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @property
    def notifier(self) -> NotificationDispatcher:
        return NotificationDispatcher(repository=self.repository, email=self.email, sleep=self.sleep)

    @property
    def notifications(self) -> NotificationScheduler:
        return NotificationScheduler(dispatcher=self.notifier, spawner=self.background)
