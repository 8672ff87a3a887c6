"""
Pipeline Errors

Typed error taxonomy for the imagery pipeline and the FastAPI handlers
that render it as `{success: false, error, error_code}`.
"""

import traceback
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from wardrobe_imagery.core.logging import current_item_id, get_logger

logger = get_logger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

AUTH_FAILED = "AUTH_FAILED"
VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
REPLICATE_ERROR = "REPLICATE_ERROR"
BACKGROUND_REMOVAL_FAILED = "BACKGROUND_REMOVAL_FAILED"
STORAGE_ERROR = "STORAGE_ERROR"
METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
INTERNAL_ERROR = "INTERNAL_ERROR"

HTTP_ERROR_CODES = {401: AUTH_FAILED, 404: NOT_FOUND, 405: METHOD_NOT_ALLOWED}


# =============================================================================
# Custom Exceptions
# =============================================================================

class WardrobeImageryError(Exception):
    """Base exception for the imagery pipeline."""

    error_code = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: int = 500,
        item_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.item_id = item_id or current_item_id()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(WardrobeImageryError):
    """Raised when input validation fails (size, type, missing fields, magic bytes)."""

    error_code = VALIDATION_ERROR

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class AuthenticationError(WardrobeImageryError):
    """Raised when the caller identity is missing or invalid."""

    error_code = AUTH_FAILED

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, code=401, **kwargs)


class OwnershipError(WardrobeImageryError):
    """Raised when the caller acts on behalf of another user."""

    error_code = AUTH_FAILED

    def __init__(self, message: str = "User ID mismatch", **kwargs):
        super().__init__(message, code=403, **kwargs)


class NotFoundError(WardrobeImageryError):
    """Raised when the owning wardrobe item does not exist for the caller."""

    error_code = NOT_FOUND

    def __init__(self, message: str = "Wardrobe item not found for user", **kwargs):
        super().__init__(message, code=404, **kwargs)


class ExternalAPIError(WardrobeImageryError):
    """Raised when an upstream service call fails."""

    def __init__(
        self,
        message: str,
        service: str,
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status

    @property
    def http_status(self) -> Optional[int]:
        return self.details.get("http_status")


class GenerationError(ExternalAPIError):
    """Raised when text-to-image generation fails."""

    error_code = REPLICATE_ERROR

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        kwargs.setdefault("stage", "generation")
        super().__init__(message, service="replicate_generation", http_status=http_status, **kwargs)


class BackgroundRemovalError(ExternalAPIError):
    """Raised when the background-removal model fails."""

    error_code = BACKGROUND_REMOVAL_FAILED

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        kwargs.setdefault("stage", "background_removal")
        super().__init__(message, service="replicate_background_removal", http_status=http_status, **kwargs)


class StorageError(WardrobeImageryError):
    """Raised when storage operations fail."""

    error_code = STORAGE_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "storage")
        super().__init__(message, code=500, **kwargs)


class ImageDecodeError(WardrobeImageryError):
    """Raised when image bytes cannot be decoded for resizing."""

    def __init__(self, message: str = "Unable to decode image", **kwargs):
        kwargs.setdefault("stage", "resize")
        super().__init__(message, code=500, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response(status_code: int, error: str, error_code: str) -> JSONResponse:
    """Render the failure envelope shared by every endpoint."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "error_code": error_code,
        }
    )


def register_exception_handlers(app: FastAPI):
    """Every failure leaves the API as the same JSON envelope."""

    @app.exception_handler(WardrobeImageryError)
    async def imagery_exception_handler(request: Request, exc: WardrobeImageryError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "imagery_exception",
            error=exc.message,
            code=exc.code,
            error_code=exc.error_code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )
        return error_response(exc.code, exc.message, exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            messages.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return error_response(400, "; ".join(messages) or "Invalid request", VALIDATION_ERROR)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            return error_response(405, "Method not allowed", METHOD_NOT_ALLOWED)
        error_code = HTTP_ERROR_CODES.get(exc.status_code, INTERNAL_ERROR)
        return error_response(exc.status_code, str(exc.detail), error_code)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return error_response(500, "Internal server error", INTERNAL_ERROR)
