"""Error taxonomy and failure classification.

Every failure surfaced to callers is a GatewayError with one of seven kinds:

- MISSING_CREDENTIAL: credential absent or rejected (401/403)
- UNSUPPORTED_PROVIDER: provider unknown, disabled, or model string unresolvable
- REQUEST_FAILED: backend or request failure (optional status code)
- RATE_LIMITED: backend rate limit (429), optional retry-after seconds
- UNAVAILABLE: backend unreachable / local daemon not running
- TIMEOUT: configured timeout elapsed
- INVALID_REQUEST: canonical request rejected before any network call

wrap_error applies the mapping rules in priority order:

1. Already a GatewayError -> unchanged
2. Connection refused / unreachable host -> UNAVAILABLE
3. Status 429 or rate-limit message -> RATE_LIMITED
4. Status 401/403 or credential message -> MISSING_CREDENTIAL
5. Timeout / deadline signal -> TIMEOUT
6. Anything else with a status code -> REQUEST_FAILED with that status
7. Anything else -> REQUEST_FAILED with the stringified cause
"""

import asyncio
import errno
import re
from collections.abc import Iterator
from enum import Enum
from typing import Any

import httpx

from llmgate.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Normalized failure kinds."""

    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    REQUEST_FAILED = "REQUEST_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    UNAVAILABLE = "UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    INVALID_REQUEST = "INVALID_REQUEST"


class GatewayError(Exception):
    """Base exception for every gateway failure.

    Attributes:
        kind: The normalized error kind
        message: Human-readable error message
        provider: The provider involved (if known)
        status_code: HTTP-like status code (if the backend returned one)
    """

    kind: ErrorKind = ErrorKind.REQUEST_FAILED

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class MissingCredentialError(GatewayError):
    """API key missing, or rejected by the backend."""

    kind = ErrorKind.MISSING_CREDENTIAL

    def __init__(
        self,
        provider: str,
        env_key: str | None = None,
        *,
        message: str | None = None,
        status_code: int | None = None,
    ):
        self.env_key = env_key
        if message is None:
            hint = f"set {env_key} or pass api_key" if env_key else "pass api_key"
            message = f"API key not found or rejected for provider '{provider}' ({hint})"
        super().__init__(message, provider=provider, status_code=status_code)


class ResolutionError(GatewayError):
    """Provider/model resolution failed. Never conflated with REQUEST_FAILED."""

    kind = ErrorKind.UNSUPPORTED_PROVIDER


class UnsupportedProviderError(ResolutionError):
    """Provider is not registered or is disabled."""

    def __init__(self, provider: str, supported: list[str] | None = None, *, reason: str = ""):
        self.supported = sorted(supported or [])
        message = reason or f"Provider '{provider}' is not supported"
        if self.supported:
            message += f". Supported providers: {', '.join(self.supported)}"
        super().__init__(message, provider=provider)


class ModelResolutionError(ResolutionError):
    """A model string carries no resolvable provider prefix."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(
            f"Cannot determine provider for model '{model}'. "
            "Use 'provider:model' format or pass an explicit provider."
        )


class RequestFailedError(GatewayError):
    """Backend returned an error, or the request could not be served."""

    kind = ErrorKind.REQUEST_FAILED


class InvalidRequestError(GatewayError):
    """Canonical request rejected by validation."""

    kind = ErrorKind.INVALID_REQUEST


class RateLimitedError(GatewayError):
    """Backend rate limit exceeded."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, provider: str | None, retry_after_s: float | None = None):
        self.retry_after_s = retry_after_s
        who = provider or "provider"
        message = f"Rate limited by {who}"
        if retry_after_s is not None:
            message += f". Retry after {retry_after_s:g} seconds"
        super().__init__(message, provider=provider, status_code=429)


class ProviderUnavailableError(GatewayError):
    """Backend unreachable or not running."""

    kind = ErrorKind.UNAVAILABLE

    def __init__(self, provider: str | None, reason: str | None = None):
        self.reason = reason
        who = provider or "provider"
        message = f"Provider '{who}' is unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message, provider=provider)


class GatewayTimeoutError(GatewayError):
    """The configured timeout elapsed before the backend answered."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, provider: str | None, timeout_s: float | None = None):
        self.timeout_s = timeout_s
        who = provider or "provider"
        if timeout_s is not None:
            message = f"Request to {who} timed out after {timeout_s:g}s"
        else:
            message = f"Request to {who} timed out"
        super().__init__(message, provider=provider)


# =============================================================================
# Signal extraction
# =============================================================================

_CONNECTION_MARKERS = (
    "econnrefused",
    "connection refused",
    "connect call failed",
    "name or service not known",
    "nodename nor servname",
    "no route to host",
    "network is unreachable",
    "all connection attempts failed",
)
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "resource_exhausted")
_CREDENTIAL_MARKERS = (
    "unauthorized",
    "invalid api key",
    "invalid x-api-key",
    "incorrect api key",
    "api_key_invalid",
    "authentication",
    "permission denied",
)
_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline exceeded")


def walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield exc and its __cause__/__context__ chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        if isinstance(cur.__cause__, BaseException):
            stack.append(cur.__cause__)
        if isinstance(cur.__context__, BaseException):
            stack.append(cur.__context__)


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a Retry-After delay in seconds."""
    for e in walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is None:
            continue
        raw = headers.get("retry-after")
        if isinstance(raw, str) and re.fullmatch(r"\s*\d+(\.\d+)?\s*", raw):
            return float(raw)
    return None


def extract_error_message(response: httpx.Response) -> str:
    """Best-effort human message from an error response body."""
    try:
        body = response.json()
    except Exception:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(body.get("message"), str):
            return body["message"]

    try:
        text = response.text.strip()
    except Exception:
        text = ""
    return text[:500] or f"HTTP {response.status_code}"


def _is_connection_refusal(exc: BaseException) -> bool:
    for e in walk_exception_chain(exc):
        if isinstance(e, httpx.ConnectError) or isinstance(e, ConnectionRefusedError):
            return True
        if isinstance(e, OSError) and e.errno in (errno.ECONNREFUSED, errno.EHOSTUNREACH):
            return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTION_MARKERS)


def _is_timeout(exc: BaseException) -> bool:
    for e in walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return True
    message = str(exc).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


def _cause_message(exc: BaseException) -> str:
    for e in walk_exception_chain(exc):
        if isinstance(e, httpx.HTTPStatusError):
            return extract_error_message(e.response)
    return str(exc) or type(exc).__name__


def wrap_error(
    exc: object,
    *,
    provider: str | None,
    timeout_s: float | None = None,
) -> GatewayError:
    """Map any raised or observed failure onto the error taxonomy.

    Backend-agnostic: adapters feed it whatever their transport or SDK
    raised. Non-exception values (e.g. a plain string) become REQUEST_FAILED.

    Args:
        exc: The failure (usually an exception).
        provider: The provider that was being called.
        timeout_s: Configured timeout, reported on TIMEOUT errors.

    Returns:
        A GatewayError instance. The caller raises it.
    """
    if isinstance(exc, asyncio.CancelledError):
        # Task cancellation must keep propagating untouched.
        raise exc

    if isinstance(exc, GatewayError):
        if exc.provider is None:
            exc.provider = provider
        return exc

    if not isinstance(exc, BaseException):
        return RequestFailedError(f"Request to {provider} failed: {exc}", provider=provider)

    status_code = extract_status_code(exc)
    message = _cause_message(exc)
    lowered = message.lower()

    if status_code is None and _is_connection_refusal(exc):
        return ProviderUnavailableError(provider, f"Cannot connect to {provider}. Is it running?")

    if status_code == 429 or (
        status_code is None and any(m in lowered for m in _RATE_LIMIT_MARKERS)
    ):
        return RateLimitedError(provider, extract_retry_after_s(exc))

    if status_code in (401, 403) or (
        status_code is None and any(m in lowered for m in _CREDENTIAL_MARKERS)
    ):
        return MissingCredentialError(
            provider or "unknown",
            message=f"Credential rejected by {provider}: {message}",
            status_code=status_code,
        )

    if status_code is None and _is_timeout(exc):
        return GatewayTimeoutError(provider, timeout_s)

    if status_code is not None:
        return RequestFailedError(
            f"Request to {provider} failed (status={status_code}): {message}",
            provider=provider,
            status_code=status_code,
        )

    logger.debug("unclassified_provider_error", provider=provider, error_type=type(exc).__name__)
    return RequestFailedError(f"Request to {provider} failed: {message}", provider=provider)


def classify_stream_error_event(
    provider: str, error_type: str | None, message: str | None
) -> GatewayError:
    """Classify an error event delivered inside an otherwise healthy stream."""
    error_type = (error_type or "").lower()
    message = message or error_type or "stream error"
    if "rate_limit" in error_type:
        return RateLimitedError(provider)
    if error_type in ("authentication_error", "permission_error"):
        return MissingCredentialError(provider, message=message)
    if error_type == "overloaded_error":
        return ProviderUnavailableError(provider, message)
    return RequestFailedError(f"Stream from {provider} failed: {message}", provider=provider)
