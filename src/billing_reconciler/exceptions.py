"""
Domain exceptions and FastAPI exception handlers
Standardized error response format: { code, message, status_code, details?, request_id }
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
from typing import Optional, Dict, Any

from .logging_config import get_request_id

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Base class for inbound event rejections (always HTTP 400)"""
    code = "WEBHOOK_VERIFICATION_FAILED"


class MissingSignatureError(WebhookVerificationError):
    """Signature header absent - usually a configuration bug upstream"""
    code = "MISSING_SIGNATURE"


class SignatureVerificationError(WebhookVerificationError):
    """Signature does not match the body, or the timestamp is outside tolerance"""
    code = "INVALID_SIGNATURE"


class MalformedEventError(WebhookVerificationError):
    """Body is not a well-formed event"""
    code = "MALFORMED_EVENT"


class DuplicateEventError(Exception):
    """Event ID already recorded in the idempotency ledger"""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already processed")
        self.event_id = event_id


class EventProcessingError(Exception):
    """A handler failed; nothing was committed for the event"""

    def __init__(self, event_id: str, event_type: str, cause: Exception):
        super().__init__(f"Processing failed for event {event_id} ({event_type}): {cause}")
        self.event_id = event_id
        self.event_type = event_type
        self.cause = cause


class ProcessorError(Exception):
    """Processor control API call failed"""


class RefundError(ValueError):
    """Refund request rejected by local policy"""


class ErrorResponse:
    """
    Standard error response format

    Schema: { code, message, status_code, details?, request_id }
    """

    @staticmethod
    def create(
        message: str,
        code: str,
        status_code: int,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> dict:
        if request_id is None:
            request_id = get_request_id()

        response = {
            "code": code,
            "message": message,
            "status_code": status_code,
        }
        if request_id:
            response["request_id"] = request_id
        if details:
            response["details"] = details
        return response


ERROR_CODE_MAP = {
    400: "BAD_REQUEST",
    401: "AUTH_ERROR",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with request ID"""
    error_code = ERROR_CODE_MAP.get(exc.status_code, "HTTP_ERROR")
    detail = exc.detail
    error_message = str(detail) if detail else f"HTTP {exc.status_code} error"
    error_details = None

    if isinstance(detail, dict):
        error_message = detail.get("message", str(detail))
        error_code = detail.get("code", error_code)
        error_details = {k: v for k, v in detail.items() if k not in ["message", "code"]} or None

    logger.warning(f"HTTP {exc.status_code}: {error_message}", extra={"path": request.url.path})

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.create(
            message=error_message,
            code=error_code,
            status_code=exc.status_code,
            details=error_details,
        ),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation exceptions with request ID"""
    errors = exc.errors()
    detail = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)

    logger.warning(f"Validation error: {detail}", extra={"path": request.url.path})

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse.create(
            message=f"Validation error: {detail}",
            code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]},
        ),
    )


async def webhook_verification_exception_handler(request: Request, exc: WebhookVerificationError) -> JSONResponse:
    """Reject unverifiable events with 400"""
    logger.warning(f"Webhook rejected ({exc.code}): {exc}", extra={"path": request.url.path})

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse.create(
            message=str(exc) or "Webhook verification failed",
            code=exc.code,
            status_code=status.HTTP_400_BAD_REQUEST,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with request ID"""
    from .config import config

    error_message = "Internal server error"
    error_details = None
    if config.is_dev:
        error_message = f"Internal server error: {str(exc)}"
        error_details = {"exception_type": type(exc).__name__}

    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True, extra={"path": request.url.path})

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse.create(
            message=error_message,
            code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=error_details,
        ),
    )
