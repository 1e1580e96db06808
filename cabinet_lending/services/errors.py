from __future__ import annotations


class LendingError(RuntimeError):
    status_code = 400
    code = "lending_error"
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> dict:
        return {"detail": self.detail, "code": self.code, "retryable": self.retryable}


class NotFoundError(LendingError):
    status_code = 404
    code = "not_found"


class InvalidTransitionError(LendingError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, action: str, current_status: str, detail: str | None = None):
        super().__init__(detail or f"Cannot {action} a request in status '{current_status}'.")
        self.action = action
        self.current_status = current_status


class EquipmentUnavailableError(LendingError):
    status_code = 409
    code = "equipment_unavailable"


class InsufficientStockError(LendingError):
    status_code = 409
    code = "insufficient_stock"


class UnauthorizedError(LendingError):
    status_code = 403
    code = "unauthorized"


class TokenExpiredError(LendingError):
    status_code = 410
    code = "expired"

    def __init__(self, detail: str = "This request link has expired. Ask the station manager to send a new link."):
        super().__init__(detail)


class RequestValidationFailed(LendingError):
    status_code = 400
    code = "validation_failed"


class StoreUnavailableError(LendingError):
    status_code = 503
    code = "store_unavailable"
    retryable = True


class NotificationFailed(LendingError):
    """Raised by notifiers; callers log it and carry on."""

    status_code = 502
    code = "notification_failed"
    retryable = True
