from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

import httpx

from app.api.handlers.deps import ApiDeps
from app.clients.http import HttpEmailClient, HttpLLMClient, HttpMediaClient, HttpStorageClient, HttpSynthesisClient
from app.clients.stub import StubEmailClient, StubLLMClient, StubMediaClient, StubStorageClient, StubSynthesisClient
from app.domain.contracts import EmailClient, LLMClient, MediaClient, OrderRepository, StorageClient, SynthesisClient
from app.repositories.postgres import AsyncpgPoolManager, PostgresOrderRepository
from app.repositories.stub import InMemoryOrderRepository
from app.roles import RuntimeRole
from app.services.background import BackgroundRunner
from app.services.settings import AppSettings, app_settings_from_env
from app.workers.handlers.deps import WorkerDeps
from app.workers.handlers.factory import build_worker_loop
from app.workers.loop import WorkerLoop

# Per-attempt deadlines are enforced by with_timeout; this only bounds a stuck socket.
HTTP_CLIENT_TIMEOUT_SECONDS = 150.0

logger = logging.getLogger("runtime")


@dataclass
class RuntimeContainer:
    settings: AppSettings
    repository: OrderRepository
    storage: StorageClient
    llm: LLMClient
    synthesis: SynthesisClient
    media: MediaClient
    email: EmailClient
    api_deps: ApiDeps
    worker_loop: WorkerLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def _chain(*steps: Callable[[], Awaitable[None]] | None) -> Callable[[], Awaitable[None]] | None:
    active = [step for step in steps if step is not None]
    if not active:
        return None

    async def _run() -> None:
        for step in active:
            await step()

    return _run


def build_runtime_container(role: RuntimeRole, settings: AppSettings | None = None) -> RuntimeContainer:
    settings = settings or app_settings_from_env()
    pool_startup: Callable[[], Awaitable[None]] | None = None
    pool_shutdown: Callable[[], Awaitable[None]] | None = None
    repository: OrderRepository
    if settings.database_url:
        pool_manager = AsyncpgPoolManager(dsn=settings.database_url)
        repository = PostgresOrderRepository(pool_manager=pool_manager)
        pool_startup = pool_manager.startup
        pool_shutdown = pool_manager.shutdown
    else:
        repository = InMemoryOrderRepository()

    http_client: httpx.AsyncClient | None = None
    if any(provider.enabled for provider in (settings.llm, settings.synthesis, settings.email, settings.storage)):
        http_client = httpx.AsyncClient(timeout=HTTP_CLIENT_TIMEOUT_SECONDS)

    llm: LLMClient = StubLLMClient()
    synthesis: SynthesisClient = StubSynthesisClient()
    media: MediaClient = StubMediaClient()
    email: EmailClient = StubEmailClient()
    if http_client is not None:
        if settings.llm.url:
            llm = HttpLLMClient(client=http_client, url=settings.llm.url, api_key=settings.llm.api_key)
        if settings.synthesis.url:
            synthesis = HttpSynthesisClient(
                client=http_client, url=settings.synthesis.url, api_key=settings.synthesis.api_key
            )
            media = HttpMediaClient(client=http_client)
        if settings.email.url:
            email = HttpEmailClient(
                client=http_client,
                url=settings.email.url,
                api_key=settings.email.api_key,
                sender=settings.email_sender,
            )
    storage: StorageClient = StubStorageClient(base_url=settings.media_bucket_url)
    if http_client is not None and settings.storage.url:
        storage = HttpStorageClient(
            client=http_client,
            upload_url=settings.storage.url,
            public_base_url=settings.media_bucket_url,
            api_key=settings.storage.api_key,
        )
    elif settings.synthesis.enabled:
        logger.warning(
            "STORAGE_API_URL is not configured; re-hosted media is kept in process memory",
            extra={"component": "services.bootstrap", "error_code": "fatal_configuration"},
        )

    api_deps = ApiDeps(
        repository=repository,
        settings=settings,
        llm=llm,
        synthesis=synthesis,
        media=media,
        storage=storage,
        email=email,
        background=BackgroundRunner(),
    )
    worker_loop = build_worker_loop(
        role.name,
        WorkerDeps(repository=repository, notifier=api_deps.notifier, settings=settings),
    )

    return RuntimeContainer(
        settings=settings,
        repository=repository,
        storage=storage,
        llm=llm,
        synthesis=synthesis,
        media=media,
        email=email,
        api_deps=api_deps,
        worker_loop=worker_loop,
        on_startup=pool_startup,
        on_shutdown=_chain(pool_shutdown, http_client.aclose if http_client is not None else None),
    )
