"""Custom exception hierarchy for model-kombat."""

from typing import Any, Dict, Optional


class KombatError(Exception):
    """Base exception for all model-kombat errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        """Initialize exception with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """Return string representation with context if available."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class ConfigurationError(KombatError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(KombatError):
    """Raised when input validation fails."""

    def __init__(
        self, message: str, field: Optional[str] = None, value: Any = None, context: Optional[Dict[str, Any]] = None
    ):
        """Initialize with validation details.

        Args:
            message: Error message
            field: Field that failed validation
            value: Invalid value
            context: Additional context
        """
        super().__init__(message, context)
        self.field = field
        self.value = value


class GatewayError(KombatError):
    """Base class for the closed set of upstream/transport failures.

    Every gateway error records which model and which phase of a pipeline
    issued the call, plus the upstream message when one was returned, so the
    caller can decide whether to retry.
    """

    def __init__(
        self,
        message: str,
        *,
        model_id: Optional[str] = None,
        phase: Optional[str] = None,
        status_code: Optional[int] = None,
        upstream_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        merged: Dict[str, Any] = {}
        if model_id:
            merged["model"] = model_id
        if phase:
            merged["phase"] = phase
        if status_code is not None:
            merged["status"] = status_code
        merged.update(context or {})
        super().__init__(message, merged)
        self.model_id = model_id
        self.phase = phase
        self.status_code = status_code
        self.upstream_message = upstream_message


class AuthError(GatewayError):
    """Raised when the upstream rejects the credential (HTTP 401)."""

    pass


class RateLimitError(GatewayError):
    """Raised when the upstream rate limit is exceeded (HTTP 429)."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any):
        """Initialize with retry information.

        Args:
            message: Error message
            retry_after: Seconds the upstream asked us to wait, if provided
            **kwargs: Forwarded to GatewayError
        """
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ModelUnavailableError(GatewayError):
    """Raised when the requested model does not exist or is offline (HTTP 404)."""

    pass


class RequestTimeoutError(GatewayError):
    """Raised when the client-side request timeout elapses."""

    pass


class BadRequestError(GatewayError):
    """Raised when the upstream rejects the request payload (HTTP 400)."""

    pass


class NetworkError(GatewayError):
    """Raised when the upstream cannot be reached."""

    pass


class InvalidResponseError(GatewayError):
    """Raised when a completion carries no usable content."""

    def __init__(self, message: str, *, payload: Optional[Dict[str, Any]] = None, **kwargs: Any):
        """Initialize with the offending payload.

        Args:
            message: Error message
            payload: Upstream error payload, when the response carried one
            **kwargs: Forwarded to GatewayError
        """
        super().__init__(message, **kwargs)
        self.payload = payload


class StreamError(GatewayError):
    """Raised when a streamed completion breaks off before its terminator."""

    pass


class UnknownError(GatewayError):
    """Raised for upstream failures outside the known taxonomy."""

    pass


class JudgeParsingError(KombatError):
    """Raised when judge output cannot be parsed into scores."""

    def __init__(self, message: str, raw_response: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        """Initialize with raw response.

        Args:
            message: Error message
            raw_response: Unparseable response text
            context: Additional context
        """
        super().__init__(message, context)
        self.raw_response = raw_response


__all__ = [
    "KombatError",
    "ConfigurationError",
    "ValidationError",
    "GatewayError",
    "AuthError",
    "RateLimitError",
    "ModelUnavailableError",
    "RequestTimeoutError",
    "BadRequestError",
    "NetworkError",
    "InvalidResponseError",
    "StreamError",
    "UnknownError",
    "JudgeParsingError",
]
