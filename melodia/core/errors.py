"""Error normalization and handlers."""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from melodia.core.logging import get_request_id

logger = logging.getLogger("melodia")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


# Billing taxonomy

class InvalidPlanError(ValidationError):
    code = "invalid_plan"


class AlreadyEntitledError(ConflictError):
    code = "already_entitled"


class UnknownOrderError(NotFoundError):
    code = "unknown_order"


class ForbiddenError(PermissionError):
    code = "forbidden"


class PremiumRequiredError(PermissionError):
    code = "premium_required"


class MalformedNotificationError(ValidationError):
    code = "malformed_notification"


class NotificationSignatureError(AppError):
    code = "invalid_signature"
    status_code = 401


class GatewayUnavailableError(ServiceUnavailableError):
    code = "gateway_unavailable"


class BillingDisabledError(ServiceUnavailableError):
    code = "billing_disabled"


class InternalError(AppError):
    code = "internal_error"
    status_code = 500




def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _render(request_id: str, status_code: int, code: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
        headers=headers,
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _render(rid, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _render(rid, exc.status_code, code, exc.detail or "HTTP error", getattr(exc, "headers", None))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _render(rid, 500, "internal_error", "Unexpected error")
