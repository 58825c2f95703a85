"""
HTTP middleware: correlation ids and error mapping.

Every ServiceError is rendered as {"error": code, "message": text} with a status
derived from its category. Upstream internals never reach the response body:
they are logged where the error is raised.
"""
import logging
import uuid
from typing import Any, Dict

from aiohttp import web

from app.core.exceptions import (
    AuthError,
    Inconsistency,
    NotFoundError,
    ServiceError,
    SignatureMismatch,
    UpstreamUnavailable,
    ValidationError,
)
from app.core.structured_logger import elapsed_ms, log_event
from app.services.activation.exceptions import ActivationServiceError
from app.services.payments.exceptions import PaymentServiceError
from app.services.provisioning.exceptions import ProvisioningServiceError, PurchaseInProgressError

logger = logging.getLogger(__name__)

CORRELATION_ID_KEY = "correlation_id"
CORRELATION_ID_HEADER = "X-Request-ID"
MAX_CORRELATION_ID_LENGTH = 64

GENERIC_UPSTREAM_MESSAGE = "Upstream service unavailable"
GENERIC_SERVER_MESSAGE = "Server error"

# Checked in order: the first matching category wins
STATUS_BY_ERROR = (
    (Inconsistency, 500),
    (PurchaseInProgressError, 409),
    (AuthError, 401),
    (NotFoundError, 404),
    (ValidationError, 400),
    (SignatureMismatch, 400),
    (UpstreamUnavailable, 502),
)

# Service-level errors carry caller-safe messages of their own
_SAFE_MESSAGE_ERRORS = (ProvisioningServiceError, PaymentServiceError, ActivationServiceError)


def status_for_error(error: ServiceError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def error_body(error: ServiceError) -> Dict[str, Any]:
    message = error.message
    if isinstance(error, UpstreamUnavailable) and not isinstance(error, _SAFE_MESSAGE_ERRORS):
        message = GENERIC_UPSTREAM_MESSAGE
    return {"error": error.code, "message": message}


def get_correlation_id(request: web.Request) -> str:
    return request.get(CORRELATION_ID_KEY) or ""


async def read_json_object(request: web.Request) -> Dict[str, Any]:
    """Parse the request body as a JSON object or raise ValidationError."""
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


@web.middleware
async def correlation_middleware(request: web.Request, handler):
    incoming = request.headers.get(CORRELATION_ID_HEADER, "")
    if not incoming or len(incoming) > MAX_CORRELATION_ID_LENGTH:
        incoming = uuid.uuid4().hex
    request[CORRELATION_ID_KEY] = incoming

    response = await handler(request)
    response.headers[CORRELATION_ID_HEADER] = incoming
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    with elapsed_ms() as elapsed:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ServiceError as e:
            status = status_for_error(e)
            log_event(
                logger, component="http", operation=f"{request.method} {request.path}",
                outcome="rejected" if status < 500 else "failed", reason=e.code,
                correlation_id=get_correlation_id(request), duration_ms=elapsed(),
                level="warning" if status < 500 else "error",
            )
            return web.json_response(error_body(e), status=status)
        except Exception as e:
            logger.exception(
                f"Unhandled error in {request.method} {request.path}: {e!r}",
                extra={"component": "http", "correlation_id": get_correlation_id(request)},
            )
            return web.json_response(
                {"error": ServiceError.code, "message": GENERIC_SERVER_MESSAGE}, status=500
            )
