"""
Error taxonomy for store order handling and the FastAPI handlers that render it
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorResponse(BaseModel):
    """Error body returned to callers"""
    error: str
    message: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    timestamp: float
    trace_id: Optional[str] = None

class ErrorCodes:
    """Error codes returned to the caller"""
    # Input / authorization
    FORBIDDEN = "forbidden"
    INVALID_PAYLOAD = "invalid_payload"
    ORDER_NOT_FOUND = "order_not_found"
    SERVER_NOT_FOUND = "server_not_found"
    INVALID_STATUS = "invalid_status"
    ORDER_LOCKED = "order_locked"

    # Order data / configuration
    ORDER_MISSING_DETAILS = "order_missing_details"
    MISSING_BOT_TOKEN = "missing_bot_token"
    INVALID_ROLE_ID = "invalid_role_id"
    BOT_MISSING_MANAGE_ROLES = "bot_missing_manage_roles"
    BOT_ROLE_HIERARCHY = "bot_role_hierarchy"

    # Delivery
    ROLE_ASSIGN_FAILED = "role_assign_failed"

    # Internal
    ROLES_FETCH_FAILED = "roles_fetch_failed"
    ROLE_PRECHECK_ERROR = "role_precheck_error"
    BALANCE_UPDATE_FAILED = "balance_update_failed"
    INTERNAL_SERVER_ERROR = "internal_error"

STATUS_CODE_MAP = {
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.INVALID_PAYLOAD: 400,
    ErrorCodes.ORDER_NOT_FOUND: 404,
    ErrorCodes.SERVER_NOT_FOUND: 404,
    ErrorCodes.INVALID_STATUS: 400,
    ErrorCodes.ORDER_LOCKED: 409,
    ErrorCodes.ORDER_MISSING_DETAILS: 400,
    ErrorCodes.MISSING_BOT_TOKEN: 400,
    ErrorCodes.INVALID_ROLE_ID: 400,
    ErrorCodes.BOT_MISSING_MANAGE_ROLES: 403,
    ErrorCodes.BOT_ROLE_HIERARCHY: 403,
    ErrorCodes.ROLE_ASSIGN_FAILED: 400,
    ErrorCodes.ROLES_FETCH_FAILED: 500,
    ErrorCodes.ROLE_PRECHECK_ERROR: 500,
    ErrorCodes.BALANCE_UPDATE_FAILED: 500,
    ErrorCodes.INTERNAL_SERVER_ERROR: 500,
}

class BusinessLogicError(Exception):
    """Rejected input or a classified operational failure (4xx)"""
    def __init__(self, code: str, message: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message or code
        self.context = context or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP.get(self.code, 400)

class ServiceError(Exception):
    """The workflow or its infrastructure is unhealthy (5xx)"""
    def __init__(self, code: str, message: str = None, original_error: Exception = None,
                 context: Dict[str, Any] = None):
        self.code = code
        self.message = message or code
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP.get(self.code, 500)

def create_error_response(
    error_code: str,
    message: str = None,
    status_code: int = 500,
    context: Dict[str, Any] = None,
    trace_id: str = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error_code,
        message=message,
        context=context or None,
        timestamp=time.time(),
        trace_id=trace_id,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body.model_dump()))

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    trace_id = getattr(request.state, 'trace_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        context=exc.context,
        trace_id=trace_id,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        context=exc.context,
        trace_id=trace_id,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    trace_id = getattr(request.state, 'trace_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={"trace_id": trace_id})

    return create_error_response(
        error_code=ErrorCodes.INVALID_PAYLOAD,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        trace_id=trace_id,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        401: ErrorCodes.FORBIDDEN,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.ORDER_NOT_FOUND,
        422: ErrorCodes.INVALID_PAYLOAD,
    }
    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
    )

async def general_exception_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
