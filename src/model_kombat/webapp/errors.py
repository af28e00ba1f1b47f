"""Translation of gateway failures into HTTP responses."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import status

from ..exceptions import (
    AuthError,
    BadRequestError,
    ConfigurationError,
    GatewayError,
    KombatError,
    ModelUnavailableError,
    RateLimitError,
    RequestTimeoutError,
    ValidationError,
)

_STATUS_BY_ERROR = (
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ModelUnavailableError, status.HTTP_404_NOT_FOUND),
    (BadRequestError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (RequestTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for_error(exc: Optional[BaseException]) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_payload(exc: KombatError) -> Dict[str, Any]:
    """Serializable body describing ``exc`` for API clients."""
    payload: Dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, GatewayError):
        payload["model_id"] = exc.model_id
        payload["phase"] = exc.phase
        payload["upstream_status"] = exc.status_code
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        payload["retry_after"] = exc.retry_after
    if isinstance(exc, ValidationError):
        payload["field"] = exc.field
    return payload


__all__ = ["error_payload", "status_for_error"]
