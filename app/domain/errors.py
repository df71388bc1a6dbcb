from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainAuthorizationError(DomainError):
    pass


class DomainNotFoundError(DomainError):
    pass


class DomainConflictError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class ConfigurationError(DomainError):
    pass


class DomainDependencyError(DomainError):
    """Failure reported by, or while talking to, an external collaborator."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class OperationTimeoutError(DomainDependencyError):
    def __init__(self, operation: str, timeout_ms: int) -> None:
        super().__init__(f"{operation} timed out after {timeout_ms}ms", code="timeout")
        self.operation = operation
        self.timeout_ms = timeout_ms


class StorageError(DomainDependencyError):
    """Storage failure carrying an SQLSTATE-style code."""
