from __future__ import annotations

from collections.abc import Iterator
import uuid

from fastapi.testclient import TestClient
import pytest

from app.api.http_app import build_app
from app.roles import validate_role
from app.services.bootstrap import RuntimeContainer, build_runtime_container
from tests.unit.domain_seed import SAMPLE_QUIZ

INTERNAL_SECRET = "internal-test-secret"
WEBHOOK_SECRET = "hottok-test"
INTERNAL_HEADERS = {"Authorization": f"Bearer {INTERNAL_SECRET}"}
PROVIDER_ENV = ("DATABASE_URL", "LLM_API_URL", "SYNTHESIS_API_URL", "EMAIL_API_URL", "STORAGE_API_URL")


@pytest.fixture
def container(monkeypatch: pytest.MonkeyPatch) -> RuntimeContainer:
    for name in PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INTERNAL_SERVICE_SECRET", INTERNAL_SECRET)
    monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return build_runtime_container(validate_role("api"))


@pytest.fixture
def client(container: RuntimeContainer) -> Iterator[TestClient]:
    app = build_app(
        role="api",
        run_id="integration-api",
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )
    with TestClient(app) as test_client:
        yield test_client


def _checkout(client: TestClient, *, email: str = "cliente@example.com") -> str:
    response = client.post(
        "/checkout",
        json={
            "session_id": str(uuid.uuid4()),
            "quiz": SAMPLE_QUIZ,
            "customer_email": email,
            "customer_whatsapp": "+5511999990000",
            "plan": "standard",
            "amount_cents": 4990,
        },
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    return body["order_id"]


def _pay(client: TestClient, order_id: str) -> None:
    response = client.post(
        "/webhooks/payment",
        json={"status": "approved", "xcod": order_id, "hottok": WEBHOOK_SECRET},
    )
    assert response.status_code == 200, response.text


@pytest.mark.integration
def test_health_and_ready_endpoints(client: TestClient) -> None:
    health = client.get("/health")
    ready = client.get("/ready")

    assert health.json() == {"status": "ok", "role": "api", "mode": "service"}
    assert ready.status_code == 200
    assert ready.json()["worker_loop_enabled"] is False
    assert ready.json()["worker_loop_ready"] is True


@pytest.mark.integration
def test_checkout_is_idempotent_and_rejects_invalid_input(client: TestClient, container: RuntimeContainer) -> None:
    payload = {
        "session_id": str(uuid.uuid4()),
        "quiz": SAMPLE_QUIZ,
        "customer_email": "cliente@example.com",
        "customer_whatsapp": "+5511999990000",
        "amount_cents": 4990,
    }

    first = client.post("/checkout", json=payload)
    second = client.post("/checkout", json=payload)
    invalid = client.post("/checkout", json={**payload, "session_id": "nope"})

    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert second.json()["order_id"] == first.json()["order_id"]
    assert invalid.status_code == 400
    assert invalid.json()["success"] is False
    assert invalid.json()["log_id"]
    assert len(container.repository.orders) == 1  # type: ignore[attr-defined]


@pytest.mark.integration
def test_form_encoded_webhook_pays_order_and_redelivery_is_acknowledged(
    client: TestClient,
    container: RuntimeContainer,
) -> None:
    order_id = _checkout(client)
    form = {"status": "approved", "email": "cliente@example.com", "transaction": "HP-1", "hottok": WEBHOOK_SECRET}

    first = client.post("/webhooks/payment", data=form)
    second = client.post("/webhooks/payment", data=form)

    assert first.status_code == 200, first.text
    assert first.json()["outcome"] == "paid"
    assert first.json()["order_id"] == order_id
    assert second.status_code == 200
    assert second.json()["success"] is True
    assert first.json()["notification_scheduled"] is True
    assert second.json()["already_paid"] is True
    client.portal.call(container.api_deps.background.drain)  # type: ignore[union-attr]
    assert len(container.email.sent) == 1  # type: ignore[attr-defined]


@pytest.mark.integration
def test_webhook_rejects_bad_secret_and_unknown_order(client: TestClient) -> None:
    bad_secret = client.post("/webhooks/payment", json={"status": "approved", "email": "a@b.com", "hottok": "x"})
    unknown = client.post(
        "/webhooks/payment",
        json={"status": "approved", "email": "nobody@example.com", "hottok": WEBHOOK_SECRET},
    )
    ignored = client.post("/webhooks/payment", json={"status": "refused", "hottok": WEBHOOK_SECRET})
    wrong_method = client.get("/webhooks/payment")

    assert bad_secret.status_code == 401
    assert unknown.status_code == 404
    assert ignored.status_code == 200
    assert ignored.json()["outcome"] == "ignored"
    assert wrong_method.status_code == 405


@pytest.mark.integration
def test_lyrics_approval_dispatch_and_callback_flow(client: TestClient, container: RuntimeContainer) -> None:
    order_id = _checkout(client)
    _pay(client, order_id)

    generated = client.post(f"/internal/orders/{order_id}/lyrics", headers=INTERNAL_HEADERS)
    assert generated.status_code == 200, generated.text
    approval = generated.json()
    assert approval["status"] == "pending"
    assert approval["validation"]["valid"] is True

    approved = client.post(
        f"/admin/approvals/{approval['approval_id']}/approve",
        headers=INTERNAL_HEADERS,
        json={"voice": "M"},
    )
    assert approved.status_code == 200, approved.text
    task_id = approved.json()["task_id"]
    assert container.synthesis.calls[-1]["vocalGender"] == "m"  # type: ignore[attr-defined]

    again = client.post(f"/admin/approvals/{approval['approval_id']}/approve", headers=INTERNAL_HEADERS)
    assert again.status_code == 409
    regenerate = client.post(f"/internal/orders/{order_id}/lyrics", headers=INTERNAL_HEADERS)
    assert regenerate.status_code == 409
    assert len(container.synthesis.calls) == 1  # type: ignore[attr-defined]

    callback = {
        "code": 200,
        "data": {
            "callbackType": "complete",
            "task_id": task_id,
            "data": [
                {"id": "clip-1", "audio_url": "https://cdn.invalid/1.mp3", "image_url": "https://cdn.invalid/1.jpg"},
                {"id": "clip-2", "audio_url": "https://cdn.invalid/2.mp3"},
            ],
        },
    }
    completed = client.post("/callbacks/synthesis", json=callback)
    duplicate = client.post("/callbacks/synthesis", json=callback)

    assert completed.status_code == 200, completed.text
    assert completed.json()["outcome"] == "completed"
    assert len(completed.json()["song_ids"]) == 2
    assert duplicate.json()["outcome"] == "duplicate"


@pytest.mark.integration
def test_failed_synthesis_is_dispatched_again_through_internal_route(
    client: TestClient,
    container: RuntimeContainer,
) -> None:
    order_id = _checkout(client)
    _pay(client, order_id)
    approval = client.post(f"/internal/orders/{order_id}/lyrics", headers=INTERNAL_HEADERS).json()
    approved = client.post(f"/admin/approvals/{approval['approval_id']}/approve", headers=INTERNAL_HEADERS)
    assert approved.status_code == 200, approved.text
    job_id = approved.json()["job_id"]
    first_task = approved.json()["task_id"]

    failed = client.post(
        "/callbacks/synthesis",
        json={"data": {"callbackType": "error", "task_id": first_task, "msg": "content policy"}},
    )
    assert failed.json()["outcome"] == "failed"

    unauthorized = client.post(f"/internal/jobs/{job_id}/audio")
    redispatched = client.post(f"/internal/jobs/{job_id}/audio", headers=INTERNAL_HEADERS)
    in_flight = client.post(f"/internal/jobs/{job_id}/audio", headers=INTERNAL_HEADERS)
    stale = client.post(
        "/callbacks/synthesis",
        json={"data": {"callbackType": "complete", "task_id": first_task, "data": [{"audio_url": "https://cdn.invalid/1.mp3"}]}},
    )

    assert unauthorized.status_code == 401
    assert redispatched.status_code == 200, redispatched.text
    assert redispatched.json()["task_id"] != first_task
    assert in_flight.status_code == 409
    assert stale.json()["outcome"] == "ignored"
    assert len(container.synthesis.calls) == 2  # type: ignore[attr-defined]


@pytest.mark.integration
def test_callback_without_task_id_is_rejected(client: TestClient) -> None:
    response = client.post("/callbacks/synthesis", json={"data": {"callbackType": "complete"}})

    assert response.status_code == 400


@pytest.mark.integration
def test_admin_actions_always_answer_200(client: TestClient) -> None:
    order_id = _checkout(client)

    paid = client.post(
        "/admin/orders/actions",
        headers=INTERNAL_HEADERS,
        json={"action": "mark_as_paid", "order_id": order_id},
    )
    refused = client.post(
        "/admin/orders/actions",
        headers=INTERNAL_HEADERS,
        json={"action": "cancel", "order_id": order_id},
    )
    unknown = client.post(
        "/admin/orders/actions",
        headers=INTERNAL_HEADERS,
        json={"action": "explode", "order_id": order_id},
    )
    missing = client.post(
        "/admin/orders/actions",
        headers=INTERNAL_HEADERS,
        json={"action": "refund", "order_id": "ord_missing"},
    )

    assert [response.status_code for response in (paid, refused, unknown, missing)] == [200, 200, 200, 200]
    assert paid.json()["success"] is True
    assert refused.json()["success"] is False
    assert unknown.json()["code"] == "unknown_action"
    assert missing.json()["code"] == "not_found"


@pytest.mark.integration
def test_internal_routes_require_credentials(client: TestClient) -> None:
    missing = client.post("/internal/retry-queue/sweep")
    wrong = client.post("/internal/retry-queue/sweep", headers={"Authorization": "Bearer nope"})
    header_secret = client.post("/internal/retry-queue/sweep", headers={"X-Internal-Secret": INTERNAL_SECRET})
    release = client.post("/internal/songs/release", headers=INTERNAL_HEADERS)

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert header_secret.status_code == 200
    assert header_secret.json()["processed"] == 0
    assert release.json() == {"processed_orders": 0, "notifications_sent": 0, "errors": 0}


@pytest.mark.integration
def test_internal_routes_fail_closed_without_configured_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("INTERNAL_SERVICE_SECRET", raising=False)
    container = build_runtime_container(validate_role("api"))
    app = build_app(role="api", run_id="integration-no-secret", api_deps=container.api_deps)

    with TestClient(app) as client:
        response = client.post("/admin/orders/actions", headers=INTERNAL_HEADERS, json={"action": "cleanup_pending"})

    assert response.status_code == 503
