from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.handlers.payments import build_post_payment_actions
from app.api.schemas import AdminActionRequest, AdminActionResponse
from app.domain.dto import ActionSuccess, AdminActionCommand
from app.domain.use_cases.admin_actions import perform_admin_action

COMPONENT_ID = "api.admin_actions"


async def admin_action_handler(*, request: AdminActionRequest, api_deps: ApiDeps) -> AdminActionResponse:
    result = await perform_admin_action(
        AdminActionCommand(
            action=request.action,
            order_id=request.order_id,
            data=dict(request.data),
            actor=request.actor or "admin",
        ),
        repository=api_deps.repository,
        post_payment=build_post_payment_actions(api_deps),
    )
    # The typed result becomes the success flag only at this boundary.
    if isinstance(result, ActionSuccess):
        return AdminActionResponse(success=True, message=result.message, data=result.data)
    return AdminActionResponse(success=False, error=result.error, code=result.code)
