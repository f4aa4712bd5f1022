"""
Error taxonomy for the giving pipeline and the FastAPI handlers that render it
"""
from typing import Optional, Dict, Any
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging
import traceback

logger = logging.getLogger(__name__)

class ErrorCodes:
    """Standard error codes"""
    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"
    MISSING_SECRET = "MISSING_SECRET"

    # Gateway
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"

    # Pipeline
    ENQUEUE_FAILED = "ENQUEUE_FAILED"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    NOTIFICATION_ERROR = "NOTIFICATION_ERROR"
    JOB_TIMEOUT = "JOB_TIMEOUT"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"

class PipelineError(Exception):
    """Base exception for everything the charge/settlement pipeline raises"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR
    status_code = 500

    def __init__(self, message: str, code: str = None, context: Dict[str, Any] = None,
                 original_error: Exception = None):
        self.message = message
        if code:
            self.code = code
        self.context = context or {}
        self.original_error = original_error
        super().__init__(message)

class ValidationError(PipelineError):
    """Required request fields are missing"""
    code = ErrorCodes.MISSING_FIELD
    status_code = 400

class AuthorizationError(PipelineError):
    code = ErrorCodes.MISSING_SECRET
    status_code = 400

class GatewayUnavailable(PipelineError):
    """The charge API could not be reached or answered with a non-2xx status"""
    code = ErrorCodes.GATEWAY_UNAVAILABLE
    status_code = 502

class EnqueueFailed(PipelineError):
    """The durable queue refused a settlement job"""
    code = ErrorCodes.ENQUEUE_FAILED
    status_code = 500

class PersistenceError(PipelineError):
    code = ErrorCodes.PERSISTENCE_ERROR
    status_code = 500

class NotificationError(PipelineError):
    code = ErrorCodes.NOTIFICATION_ERROR

class JobTimeout(PipelineError):
    code = ErrorCodes.JOB_TIMEOUT

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    extra: Dict[str, Any] = None,
    trace_id: Optional[str] = None
) -> JSONResponse:
    """Create the `{error, code}` response body used by every endpoint"""
    content = {"error": message, "code": error_code}
    if extra:
        content.update(extra)
    if trace_id:
        content["trace_id"] = trace_id
    return JSONResponse(status_code=status_code, content=content)

async def pipeline_exception_handler(request: Request, exc: PipelineError):
    """Handle pipeline exceptions"""
    trace_id = getattr(request.state, 'trace_id', None)

    if isinstance(exc, EnqueueFailed):
        # Money has moved but the settlement job does not exist
        logger.critical(f"Charge succeeded but settlement was not queued: {exc.message}", extra={
            "error_code": exc.code,
            "trace_id": trace_id,
            "context": exc.context,
            "original_error": str(exc.original_error) if exc.original_error else None
        })
    elif exc.status_code >= 500:
        logger.error(f"Pipeline error: {exc.code} - {exc.message}", extra={
            "error_code": exc.code,
            "trace_id": trace_id,
            "original_error": str(exc.original_error) if exc.original_error else None
        })
    else:
        logger.warning(f"Rejected request: {exc.code} - {exc.message}", extra={
            "error_code": exc.code,
            "trace_id": trace_id
        })

    extra = None
    if "result" in exc.context:
        extra = {"result": exc.context["result"]}

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        extra=extra,
        trace_id=trace_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle malformed bodies"""
    trace_id = getattr(request.state, 'trace_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        trace_id=trace_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
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
        trace_id=trace_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(PipelineError, pipeline_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
