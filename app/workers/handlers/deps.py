from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.domain.contracts import OrderRepository
from app.domain.use_cases.notifications import NotificationDispatcher
from app.services.settings import AppSettings


@dataclass(frozen=True)
class WorkerDeps:
    repository: OrderRepository
    notifier: NotificationDispatcher
    settings: AppSettings
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
