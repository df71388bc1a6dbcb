from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from app.domain.errors import (
    ConfigurationError,
    DomainAuthorizationError,
    DomainConflictError,
    DomainDependencyError,
    DomainNotFoundError,
    DomainValidationError,
)
from app.lib.resilience import is_retryable

# Canonical error vocabulary for all components.
ErrorCode = Literal[
    "validation_error",
    "authorization_failed",
    "not_found",
    "conflict",
    "upstream_transient",
    "upstream_rejected",
    "storage_transient",
    "fatal_configuration",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for last_error_code.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "validation_error",
    "authorization_failed",
    "not_found",
    "conflict",
    "upstream_transient",
    "upstream_rejected",
    "storage_transient",
    "fatal_configuration",
    "internal_error",
)

# Errors that may be retried within a component's attempt policy.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "upstream_transient",
        "storage_transient",
        "internal_error",
    }
)

# SQLSTATE classes: deadlock, resources, operator intervention, connection.
_STORAGE_CLASSES = frozenset({"40", "53", "57", "08"})

HTTP_STATUS_BY_CODE: Mapping[ErrorCode, int] = {
    "validation_error": 400,
    "authorization_failed": 401,
    "not_found": 404,
    "conflict": 409,
    "upstream_transient": 502,
    "upstream_rejected": 502,
    "storage_transient": 503,
    "fatal_configuration": 500,
    "internal_error": 500,
}

# Component-specific allowlist. Codes outside the map are normalized to
# internal_error by resolve_component_error().
COMPONENT_ERROR_MAP: Mapping[str, frozenset[ErrorCode]] = {
    "payment_webhook": frozenset(
        {
            "validation_error",
            "authorization_failed",
            "not_found",
            "storage_transient",
            "internal_error",
        }
    ),
    "order_creation": frozenset(
        {
            "validation_error",
            "storage_transient",
            "internal_error",
        }
    ),
    "lyrics": frozenset(
        {
            "validation_error",
            "not_found",
            "upstream_transient",
            "upstream_rejected",
            "fatal_configuration",
            "internal_error",
        }
    ),
    "audio_dispatch": frozenset(
        {
            "validation_error",
            "not_found",
            "conflict",
            "upstream_transient",
            "upstream_rejected",
            "fatal_configuration",
            "internal_error",
        }
    ),
    "synthesis_callback": frozenset(
        {
            "validation_error",
            "not_found",
            "upstream_transient",
            "upstream_rejected",
            "storage_transient",
            "internal_error",
        }
    ),
    "retry_queue": frozenset(
        {
            "validation_error",
            "storage_transient",
            "internal_error",
        }
    ),
    "notification": frozenset(
        {
            "validation_error",
            "upstream_transient",
            "upstream_rejected",
            "fatal_configuration",
            "internal_error",
        }
    ),
}


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_component_error(*, component: str, code: str) -> ErrorCode:
    allowed = COMPONENT_ERROR_MAP.get(component, frozenset({"internal_error"}))
    if code in allowed and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if a caller emitted an unsupported code.
    return "internal_error"


def error_code_for(exc: BaseException) -> ErrorCode:
    if isinstance(exc, DomainValidationError):
        return "validation_error"
    if isinstance(exc, DomainAuthorizationError):
        return "authorization_failed"
    if isinstance(exc, DomainNotFoundError):
        return "not_found"
    if isinstance(exc, DomainConflictError):
        return "conflict"
    if isinstance(exc, ConfigurationError):
        return "fatal_configuration"
    if isinstance(exc, DomainDependencyError):
        if is_retryable(exc):
            return "storage_transient" if exc.code and exc.code[:2] in _STORAGE_CLASSES else "upstream_transient"
        return "upstream_rejected"
    return "internal_error"


def http_status_for(code: ErrorCode) -> int:
    return HTTP_STATUS_BY_CODE.get(code, 500)
