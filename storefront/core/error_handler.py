"""
Error handling and sanitization

- StorefrontError subclasses map to their declared HTTP status with a
  {"success": false, "error", "code"} body
- Request validation errors -> 400 with field-level detail
- Anything unhandled -> logged with traceback, generic 500 to the client
"""
import logging
import traceback

from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError as FastAPIRequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.config import settings
from storefront.core.exceptions import StorefrontError

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.to_dict()}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


async def validation_error_handler(request: Request, exc: FastAPIRequestValidationError) -> JSONResponse:
    fields = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        fields.append({"field": location, "message": err.get("msg", "Invalid value")})
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation failed",
            "code": "VALIDATION_ERROR",
            "details": fields,
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )
            content = {"success": False, "error": GENERIC_ERROR_MESSAGE, "error_id": error_id}
            if settings.DEBUG:
                content["detail"] = f"{type(e).__name__}: {e}"
            return JSONResponse(status_code=500, content=content)
