from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import CreateOrderRequest, CreateOrderResponse
from app.domain.dto import CreateOrderCommand
from app.domain.use_cases.orders import create_order

COMPONENT_ID = "api.create_order"


async def create_order_handler(
    *,
    request: CreateOrderRequest,
    ip_address: str | None,
    user_agent: str | None,
    api_deps: ApiDeps,
) -> CreateOrderResponse:
    result = await create_order(
        CreateOrderCommand(
            session_id=request.session_id,
            quiz=request.quiz,
            customer_email=request.customer_email,
            customer_whatsapp=request.customer_whatsapp,
            plan=request.plan,
            amount_cents=request.amount_cents,
            transaction_id=request.transaction_id,
            source=request.source or "api",
            ip_address=ip_address,
            user_agent=user_agent,
        ),
        repository=api_deps.repository,
        lifecycle=api_deps.settings.retry_queue,
    )
    return CreateOrderResponse(
        success=result.success,
        order_id=result.order_id,
        quiz_id=result.quiz_id,
        log_id=result.log_id,
        created=result.created,
        error=result.error,
    )
