"""Application error taxonomy and its FastAPI wiring.

Service code raises these; ``register_exception_handlers`` turns them into
JSON responses of the shape ``{"detail": ..., "code": ...}``.

    ValidationError        400  malformed input
    WebhookSignatureError  400  webhook payload failed verification
    AuthorizationError     403  resource owned by someone else
    NotFoundError          404  unknown order / zone / currency / user
    ConflictError          409  transition not allowed from current state
    PaymentMismatchError   409  intent amount, currency or order disagrees with the order
    InternalError          500  transaction or reservation failure
    ExternalServiceError   502  provider failure with no fallback
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from libs.common.logging import get_logger

logger = get_logger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""

    http_status: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, error_code: Optional[str] = None, **context):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.error_code}


class ValidationError(AppError):
    http_status = 400
    error_code = "validation_error"


class WebhookSignatureError(AppError):
    http_status = 400
    error_code = "invalid_signature"


class AuthorizationError(AppError):
    http_status = 403
    error_code = "forbidden"


class NotFoundError(AppError):
    http_status = 404
    error_code = "not_found"


class UnsupportedCurrencyError(NotFoundError):
    error_code = "unsupported_currency"

    def __init__(self, currency: str):
        super().__init__(f"Unsupported currency: {currency}", currency=currency)
        self.currency = currency


class ShippingUnavailableError(NotFoundError):
    error_code = "shipping_unavailable"

    def __init__(self, country_code: str):
        super().__init__(
            "Shipping not available to this destination", country_code=country_code
        )
        self.country_code = country_code


class ConflictError(AppError):
    http_status = 409
    error_code = "conflict"


class PaymentMismatchError(ConflictError):
    """A succeeded intent does not settle the order it points at."""

    error_code = "payment_mismatch"


class InternalError(AppError):
    http_status = 500
    error_code = "internal_error"


class ReservationError(InternalError):
    error_code = "reservation_failed"


class ExternalServiceError(AppError):
    http_status = 502
    error_code = "external_service_error"

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: Optional[int] = None,
        response_data: Optional[dict] = None,
    ):
        super().__init__(message, provider=provider)
        self.provider = provider
        self.status_code = status_code
        self.response_data = response_data or {}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if isinstance(exc, InternalError):
        logger.error(
            "Internal error on %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
            exc_info=exc,
            extra={"extra_fields": {"code": exc.error_code, **exc.context}},
        )
    elif exc.http_status >= 500:
        logger.warning(
            "Upstream failure on %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
