from __future__ import annotations


class DomainError(Exception):
    pass


class ValidationError(DomainError):
    """Malformed or out-of-range input. Raised before any mutation."""


class NotFoundError(DomainError):
    pass


class ConcurrencyError(DomainError):
    """Lost update on a version-checked write."""


class DraftNotReadyError(DomainError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"backpressure draft is not ready: {reason}")
        self.reason = reason


class DeliveryAttemptError(DomainError):
    def __init__(self, code: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
