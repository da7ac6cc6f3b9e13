"""
Error Handling System for the comparator core

This module provides:
1. A closed error taxonomy and the ClassifiedError exception family
2. Classification of raw failures (backend codes, HTTP status, exception
   types, message heuristics) into exactly one taxonomy member
3. A retry controller with exponential backoff and jitter, gated by
   per-operation circuit breakers
4. User-facing messages, recovery suggestions and structured error logging
"""

import asyncio
import functools
import inspect
import json
import logging
import random
import re
import time
import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Type, TypeVar, Union, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator

from comparator.common.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitState,
    circuit_key,
    get_circuit_breaker_registry
)
from comparator.common.config import RetryConfig
from comparator.common.logger import bind_context

T = TypeVar('T')
F = TypeVar('F', bound=Callable)

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCode(str, Enum):
    """Closed error taxonomy"""
    NETWORK_ERROR = "network-error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate-limit"
    SERVICE_UNAVAILABLE = "service-unavailable"
    PROVIDER_ERROR = "provider-error"
    AUTHENTICATION_ERROR = "authentication-error"
    PERMISSION_ERROR = "permission-error"
    VALIDATION_ERROR = "validation-error"
    NOT_FOUND = "not-found"
    QUOTA_EXCEEDED = "quota-exceeded"
    UNKNOWN = "unknown"


RETRYABLE_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.NETWORK_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.RATE_LIMIT,
    ErrorCode.SERVICE_UNAVAILABLE,
    ErrorCode.PROVIDER_ERROR,
})

USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.NETWORK_ERROR: "Network connection issue. Please check your internet connection.",
    ErrorCode.TIMEOUT: "The request took too long to complete. Please try again.",
    ErrorCode.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable. Please try again later.",
    ErrorCode.PROVIDER_ERROR: "AI service is temporarily unavailable. Please try again in a few moments.",
    ErrorCode.AUTHENTICATION_ERROR: "Authentication required. Please sign in and try again.",
    ErrorCode.PERMISSION_ERROR: "You do not have permission to perform this action.",
    ErrorCode.VALIDATION_ERROR: "Invalid input. Please check your data and try again.",
    ErrorCode.NOT_FOUND: "The requested item was not found. It may have been deleted.",
    ErrorCode.QUOTA_EXCEEDED: "Usage quota exceeded. Please upgrade your plan or try again later.",
    ErrorCode.UNKNOWN: "An unexpected error occurred. Please try again.",
}

RECOVERY_SUGGESTIONS: Dict[ErrorCode, List[str]] = {
    ErrorCode.NETWORK_ERROR: [
        "Check your internet connection",
        "Try refreshing the page",
        "Switch to a different network if available",
    ],
    ErrorCode.TIMEOUT: [
        "Try again in a moment",
        "Reduce the scope of the research topic",
    ],
    ErrorCode.RATE_LIMIT: [
        "Wait a few seconds and try again",
        "Reduce the frequency of requests",
        "Try again during off-peak hours",
    ],
    ErrorCode.SERVICE_UNAVAILABLE: [
        "Wait a few minutes and try again",
        "Check system status",
    ],
    ErrorCode.PROVIDER_ERROR: [
        "Wait a few minutes and try again",
        "Try a different AI provider if available",
        "Check system status page",
    ],
    ErrorCode.AUTHENTICATION_ERROR: [
        "Sign out and sign back in",
        "Check if your session has expired",
    ],
    ErrorCode.PERMISSION_ERROR: [
        "Ask the owner for access",
        "Check that you are signed in with the right account",
    ],
    ErrorCode.VALIDATION_ERROR: [
        "Check the highlighted fields",
        "Shorten or simplify the input",
    ],
    ErrorCode.QUOTA_EXCEEDED: [
        "Upgrade your plan for higher limits",
        "Wait until your quota resets",
        "Review your usage patterns",
    ],
}

DEFAULT_SUGGESTIONS = ["Try refreshing the page", "Contact support if the problem persists"]

NOTIFY_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.AUTHENTICATION_ERROR,
    ErrorCode.PERMISSION_ERROR,
    ErrorCode.QUOTA_EXCEEDED,
    ErrorCode.SERVICE_UNAVAILABLE,
})

SEVERITIES: Dict[ErrorCode, ErrorSeverity] = {
    ErrorCode.VALIDATION_ERROR: ErrorSeverity.WARNING,
    ErrorCode.NOT_FOUND: ErrorSeverity.WARNING,
    ErrorCode.AUTHENTICATION_ERROR: ErrorSeverity.WARNING,
    ErrorCode.PERMISSION_ERROR: ErrorSeverity.WARNING,
    ErrorCode.RATE_LIMIT: ErrorSeverity.WARNING,
    ErrorCode.QUOTA_EXCEEDED: ErrorSeverity.WARNING,
}


def get_user_friendly_message(code: ErrorCode) -> str:
    """Fixed user-facing message of a code."""
    return USER_MESSAGES.get(ErrorCode(code), USER_MESSAGES[ErrorCode.UNKNOWN])


def get_recovery_suggestions(code: ErrorCode) -> List[str]:
    """Suggestions shown to the user next to an error."""
    return list(RECOVERY_SUGGESTIONS.get(ErrorCode(code), DEFAULT_SUGGESTIONS))


def should_notify_user(code: ErrorCode) -> bool:
    """Codes that need the user's corrective action rather than a silent retry."""
    return ErrorCode(code) in NOTIFY_CODES


def is_retryable(code: ErrorCode) -> bool:
    """Whether a code belongs to the default retryable set."""
    return ErrorCode(code) in RETRYABLE_CODES


class ErrorContext(BaseModel):
    """Where an error happened"""
    model_config = ConfigDict(extra='allow')

    service: Optional[str] = None
    operation: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    provider: Optional[str] = None


class ErrorInfo(BaseModel):
    """Structured information about an error"""
    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    recoverable: bool
    timestamp: datetime = Field(default_factory=datetime.now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    exception_type: Optional[str] = None
    stack_trace: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None
    suggestions: List[str] = Field(default_factory=list)

    @field_validator('stack_trace', mode='before')
    @classmethod
    def validate_stack_trace(cls, v):
        """Format stack trace if it's a string"""
        if isinstance(v, str):
            return v.splitlines()
        return v


class ClassifiedError(Exception):
    """
    Base exception for every error leaving the classification boundary.

    ``message`` is the fixed user-facing message of ``code``; the raw failure
    text is kept in ``details["original_message"]`` and the raw exception in
    ``cause``.
    """

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        if code is not None:
            self.code = ErrorCode(code)
        self.message = message or get_user_friendly_message(self.code)
        super().__init__(self.message)
        self.severity = severity or SEVERITIES.get(self.code, ErrorSeverity.ERROR)
        self.details = details or {}
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now()

    @property
    def recoverable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def suggestions(self) -> List[str]:
        return get_recovery_suggestions(self.code)

    def to_error_info(self, include_stack_trace: bool = False) -> ErrorInfo:
        """Convert the exception to an ErrorInfo object"""
        details = dict(self.details)
        if self.cause is not None:
            details["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }

        stack_trace = None
        if include_stack_trace:
            stack_trace = traceback.format_exception(type(self), self, self.__traceback__)

        return ErrorInfo(
            code=self.code,
            message=self.message,
            recoverable=self.recoverable,
            timestamp=self.timestamp,
            severity=self.severity,
            details=details,
            exception_type=type(self).__name__,
            stack_trace=stack_trace,
            context=self.context,
            suggestions=self.suggestions
        )

    def to_dict(self, include_stack_trace: bool = False) -> Dict[str, Any]:
        """Convert the exception to a dictionary"""
        return self.to_error_info(include_stack_trace).model_dump(mode='json')

    def to_json(self, include_stack_trace: bool = False) -> str:
        """Convert the exception to a JSON string"""
        return json.dumps(self.to_dict(include_stack_trace))

    def __str__(self) -> str:
        base_str = f"{self.code.value}: {self.message}"
        original = self.details.get("original_message")
        if original and original != self.message:
            base_str += f" ({original})"
        return base_str


class NetworkError(ClassifiedError):
    """Transport or connectivity failure"""
    code = ErrorCode.NETWORK_ERROR


class OperationTimeoutError(ClassifiedError):
    """Operation exceeded its own deadline"""
    code = ErrorCode.TIMEOUT


class RateLimitError(ClassifiedError):
    """Provider or backend throttling"""
    code = ErrorCode.RATE_LIMIT

    @property
    def retry_after(self) -> Optional[float]:
        return self.details.get("retry_after_seconds")


class ServiceUnavailableError(ClassifiedError):
    """Backend degraded, or a circuit breaker rejected the call"""
    code = ErrorCode.SERVICE_UNAVAILABLE


class ProviderError(ClassifiedError):
    """AI provider returned a processing failure"""
    code = ErrorCode.PROVIDER_ERROR


class AuthenticationError(ClassifiedError):
    """Caller session invalid or expired"""
    code = ErrorCode.AUTHENTICATION_ERROR


class AuthorizationError(ClassifiedError):
    """Caller lacks rights"""
    code = ErrorCode.PERMISSION_ERROR


class ValidationError(ClassifiedError):
    """Malformed input or constraint violation"""
    code = ErrorCode.VALIDATION_ERROR


class NotFoundError(ClassifiedError):
    """Referenced entity absent"""
    code = ErrorCode.NOT_FOUND


class QuotaExceededError(ClassifiedError):
    """Usage limit reached"""
    code = ErrorCode.QUOTA_EXCEEDED


ERROR_CLASSES: Dict[ErrorCode, Type[ClassifiedError]] = {
    ErrorCode.NETWORK_ERROR: NetworkError,
    ErrorCode.TIMEOUT: OperationTimeoutError,
    ErrorCode.RATE_LIMIT: RateLimitError,
    ErrorCode.SERVICE_UNAVAILABLE: ServiceUnavailableError,
    ErrorCode.PROVIDER_ERROR: ProviderError,
    ErrorCode.AUTHENTICATION_ERROR: AuthenticationError,
    ErrorCode.PERMISSION_ERROR: AuthorizationError,
    ErrorCode.VALIDATION_ERROR: ValidationError,
    ErrorCode.NOT_FOUND: NotFoundError,
    ErrorCode.QUOTA_EXCEEDED: QuotaExceededError,
    ErrorCode.UNKNOWN: ClassifiedError,
}


def make_error(
    code: ErrorCode,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    cause: Optional[BaseException] = None,
    context: Optional[Dict[str, Any]] = None
) -> ClassifiedError:
    """Instantiate the ClassifiedError subclass bound to ``code``."""
    code = ErrorCode(code)
    error_class = ERROR_CLASSES[code]
    return error_class(message=message, code=code, details=details, cause=cause, context=context)


# Classification decision table

BACKEND_CODES: Dict[str, ErrorCode] = {
    # PostgreSQL / PostgREST
    "42501": ErrorCode.PERMISSION_ERROR,
    "23505": ErrorCode.VALIDATION_ERROR,
    "23503": ErrorCode.VALIDATION_ERROR,
    "23502": ErrorCode.VALIDATION_ERROR,
    "23514": ErrorCode.VALIDATION_ERROR,
    "22P02": ErrorCode.VALIDATION_ERROR,
    "PGRST116": ErrorCode.NOT_FOUND,
    "PGRST301": ErrorCode.AUTHENTICATION_ERROR,
    # Transport
    "NETWORK_ERROR": ErrorCode.NETWORK_ERROR,
    "ECONNREFUSED": ErrorCode.NETWORK_ERROR,
    "ECONNRESET": ErrorCode.NETWORK_ERROR,
    "ENOTFOUND": ErrorCode.NETWORK_ERROR,
    "ETIMEDOUT": ErrorCode.TIMEOUT,
    "ECONNABORTED": ErrorCode.TIMEOUT,
    # Provider error types
    "rate_limit_error": ErrorCode.RATE_LIMIT,
    "rate_limit_exceeded": ErrorCode.RATE_LIMIT,
    "insufficient_quota": ErrorCode.QUOTA_EXCEEDED,
    "overloaded_error": ErrorCode.PROVIDER_ERROR,
    "authentication_error": ErrorCode.AUTHENTICATION_ERROR,
    "invalid_api_key": ErrorCode.AUTHENTICATION_ERROR,
    "permission_error": ErrorCode.PERMISSION_ERROR,
    "invalid_request_error": ErrorCode.VALIDATION_ERROR,
    "not_found_error": ErrorCode.NOT_FOUND,
}

STATUS_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTHENTICATION_ERROR,
    402: ErrorCode.QUOTA_EXCEEDED,
    403: ErrorCode.PERMISSION_ERROR,
    404: ErrorCode.NOT_FOUND,
    408: ErrorCode.TIMEOUT,
    409: ErrorCode.VALIDATION_ERROR,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMIT,
    500: ErrorCode.SERVICE_UNAVAILABLE,
    502: ErrorCode.SERVICE_UNAVAILABLE,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.TIMEOUT,
    529: ErrorCode.PROVIDER_ERROR,
}

# Checked in order; the first matching group wins
MESSAGE_PATTERNS: List = [
    (ErrorCode.QUOTA_EXCEEDED, ("quota", "usage limit", "billing", "credit balance")),
    (ErrorCode.RATE_LIMIT, ("rate limit", "rate_limit", "ratelimit", "too many requests")),
    (ErrorCode.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (ErrorCode.NETWORK_ERROR, (
        "network", "failed to fetch", "connection refused", "connection reset",
        "connection error", "econnrefused", "socket", "dns",
    )),
    (ErrorCode.AUTHENTICATION_ERROR, (
        "unauthorized", "unauthenticated", "invalid api key", "jwt expired", "not authenticated",
    )),
    (ErrorCode.PERMISSION_ERROR, ("permission denied", "forbidden", "row-level security")),
    (ErrorCode.SERVICE_UNAVAILABLE, ("service unavailable", "temporarily unavailable")),
    (ErrorCode.PROVIDER_ERROR, (
        "anthropic", "claude", "openai", "gpt-", "grok", "x.ai", "overloaded",
        "provider", "completion", "model error",
    )),
    (ErrorCode.NOT_FOUND, ("not found", "does not exist")),
]

# "AI" is matched case-sensitively as a word so "said" or "email" do not count
AI_MARKER = re.compile(r"\bAI\b")


def _field(raw: Any, *names: str) -> Any:
    """First present attribute or mapping key among ``names``."""
    for name in names:
        if isinstance(raw, dict):
            if raw.get(name) is not None:
                return raw[name]
        else:
            value = getattr(raw, name, None)
            if value is not None:
                return value
    return None


def _extract_status(raw: Any) -> Optional[int]:
    status = _field(raw, "status", "status_code", "statusCode", "http_status")
    if status is None:
        response = _field(raw, "response")
        if response is not None:
            status = _field(response, "status_code", "status")
    if status is None:
        code = _field(raw, "code")
        if isinstance(code, int) and 100 <= code <= 599:
            status = code
    try:
        return int(status) if status is not None and not isinstance(status, bool) else None
    except (TypeError, ValueError):
        return None


def _extract_message(raw: Any) -> str:
    if isinstance(raw, BaseException):
        return str(raw)
    if isinstance(raw, dict):
        return str(raw.get("message") or raw.get("error") or raw)
    return str(raw)


def _classify_code(raw: Any) -> ErrorCode:
    # 1. Structured backend / provider codes
    for value in (_field(raw, "code"), _field(raw, "pgcode"), _field(raw, "type")):
        if isinstance(value, str):
            if value in BACKEND_CODES:
                return BACKEND_CODES[value]
            if value.upper() in BACKEND_CODES:
                return BACKEND_CODES[value.upper()]
    if type(raw).__name__ == "NetworkError":
        return ErrorCode.NETWORK_ERROR

    # 2. Numeric status
    status = _extract_status(raw)
    if status is not None and status in STATUS_CODES:
        return STATUS_CODES[status]

    # 3. Exception types
    if isinstance(raw, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(raw, ConnectionError):
        return ErrorCode.NETWORK_ERROR

    # 4. Message heuristics
    message = _extract_message(raw)
    lowered = message.lower()
    for code, needles in MESSAGE_PATTERNS:
        if any(needle in lowered for needle in needles):
            return code
    if AI_MARKER.search(message) or _field(raw, "provider") is not None:
        return ErrorCode.PROVIDER_ERROR

    if status is not None and status >= 500:
        return ErrorCode.SERVICE_UNAVAILABLE
    return ErrorCode.UNKNOWN


def classify_error(raw: Any, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
    """
    Map any raised failure to exactly one ClassifiedError.

    Structured signals are trusted over heuristics: an already classified
    error is returned as-is, then backend/provider error codes, then numeric
    status, then exception types, then message substrings, then ``unknown``.

    Args:
        raw: Exception, error-shaped dict or any other value
        context: Context merged into the result

    Returns:
        A ClassifiedError subclass instance
    """
    if isinstance(raw, ClassifiedError):
        if context:
            for key, value in context.items():
                raw.context.setdefault(key, value)
        return raw

    code = _classify_code(raw)
    details: Dict[str, Any] = {"original_message": _extract_message(raw)}
    status = _extract_status(raw)
    if status is not None:
        details["status"] = status
    provider = _field(raw, "provider")
    if provider is not None:
        details["provider"] = str(provider)
    retry_after = _field(raw, "retry_after")
    if retry_after is not None:
        details["retry_after_seconds"] = retry_after

    cause = raw if isinstance(raw, BaseException) else None
    return make_error(code, details=details, cause=cause, context=dict(context or {}))


class ErrorHandler:
    """
    Retry controller for one service.

    ``execute_with_retry`` runs an operation under the circuit breaker of
    ``"{service}:{operation_name}"``, retrying retryable failures with
    exponential backoff and jitter. Callers always receive either the result
    or a ClassifiedError.
    """

    def __init__(
        self,
        service: str,
        retry_config: Optional[RetryConfig] = None,
        circuit_breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        random_fn: Callable[[], float] = random.random
    ):
        """
        Initialize the handler.

        Args:
            service: Service name, first half of circuit keys
            retry_config: Backoff settings
            circuit_breakers: Registry to use, the process-wide one by default
            sleep: Coroutine used between attempts, ``asyncio.sleep`` by default
            random_fn: Source of jitter in [0, 1)
        """
        self.service = service
        self.retry_config = retry_config or RetryConfig()
        self.circuit_breakers = circuit_breakers or get_circuit_breaker_registry()
        self._sleep = sleep or asyncio.sleep
        self._random = random_fn
        self._retryable = frozenset(ErrorCode(code) for code in self.retry_config.retryable_codes)
        self._error_counts: Dict[str, int] = {}
        self._log = bind_context(logger, service=service)

    def is_retryable(self, code: ErrorCode) -> bool:
        return ErrorCode(code) in self._retryable

    def compute_delay(self, attempt: int) -> float:
        """
        Backoff before retry number ``attempt + 1``.

        ``min(base_delay * backoff_multiplier ** attempt, max_delay)`` plus up to
        ``jitter`` of that value at random.
        """
        config = self.retry_config
        delay = min(config.base_delay * (config.backoff_multiplier ** attempt), config.max_delay)
        return delay + self._random() * config.jitter * delay

    async def execute_with_retry(
        self,
        operation: Callable[[], Union[Awaitable[T], T]],
        operation_name: str,
        context: Optional[Dict[str, Any]] = None
    ) -> T:
        """
        Run ``operation`` with retries.

        Args:
            operation: Zero-argument callable, sync or returning an awaitable
            operation_name: Second half of the circuit key
            context: Correlating ids added to any raised error

        Returns:
            The operation's result

        Raises:
            ClassifiedError: ``service-unavailable`` without attempting when the
                circuit is open, otherwise the classified last failure
        """
        key = circuit_key(self.service, operation_name)
        error_context = self._build_context(operation_name, context)

        if self.circuit_breakers.is_open(key):
            record = self.circuit_breakers.get_record(key)
            details = {"circuit": key, "circuit_open": True}
            if record is not None:
                details["next_attempt_time"] = record.next_attempt_time
            raise self.create_error(
                ErrorCode.SERVICE_UNAVAILABLE,
                details=details,
                context=error_context
            )

        attempt = 0
        while True:
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                self.circuit_breakers.release_trial(key)
                raise
            except Exception as e:
                classified = classify_error(e, error_context)
                classified.details["attempts"] = attempt + 1
                self.circuit_breakers.record_failure(key)

                if (not self.is_retryable(classified.code)
                        or attempt >= self.retry_config.max_retries
                        or self.circuit_breakers.get_state(key) == CircuitState.OPEN):
                    self._record(classified)
                    if classified is e:
                        raise
                    raise classified from e

                delay = self.compute_delay(attempt)
                self._log.warning(
                    f"Retry {attempt + 1}/{self.retry_config.max_retries} for {key} "
                    f"after {delay:.2f}s due to {classified.code.value}: "
                    f"{classified.details.get('original_message', classified.message)}",
                    extra={"data": {"circuit": key, "attempt": attempt + 1, "delay": round(delay, 3)}}
                )
                await self._sleep(delay)
                attempt += 1
                continue

            self.circuit_breakers.record_success(key)
            return result

    def handle_error(self, error: Any, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
        """Classify, count and log a failure."""
        classified = classify_error(error, self._build_context(None, context))
        self._record(classified)
        return classified

    def create_error(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ClassifiedError:
        """Build, count and log a ClassifiedError of ``code``."""
        error = make_error(
            code,
            message=message,
            details=details,
            cause=cause,
            context=self._build_context(None, context)
        )
        self._record(error)
        return error

    def get_error_stats(self) -> Dict[str, int]:
        """Errors surfaced by this handler, counted by code."""
        return dict(self._error_counts)

    def clear_error_stats(self) -> None:
        self._error_counts.clear()

    def _build_context(self, operation_name: Optional[str], context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = ErrorContext(service=self.service, operation=operation_name).model_dump(exclude_none=True)
        if context:
            data.update({k: v for k, v in context.items() if v is not None})
        return data

    def _record(self, error: ClassifiedError) -> None:
        code = error.code.value
        self._error_counts[code] = self._error_counts.get(code, 0) + 1
        level = logging.WARNING if error.severity == ErrorSeverity.WARNING else logging.ERROR
        log_error(error, level=level, include_stack_trace=False)


def retry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 10.0,
    jitter: float = 0.1,
    retryable_codes: FrozenSet[ErrorCode] = RETRYABLE_CODES,
    on_retry: Optional[Callable[[int, ClassifiedError, float], None]] = None
):
    """
    Decorator retrying a function while its failures classify as retryable.

    Failures are re-raised as ClassifiedError. No circuit breaker is involved;
    use ``ErrorHandler.execute_with_retry`` for calls to external providers.

    Args:
        max_retries: Maximum number of retries
        retry_delay: Initial delay between retries in seconds
        backoff_factor: Factor to increase delay with each retry
        max_delay: Upper bound of the delay before jitter
        jitter: Random jitter fraction added to each delay
        retryable_codes: Codes worth retrying
        on_retry: Optional callback called before each retry

    Returns:
        Decorated function
    """
    def next_delay(retries: int) -> float:
        delay = min(retry_delay * (backoff_factor ** (retries - 1)), max_delay)
        return delay + random.uniform(0, jitter) * delay

    def should_stop(error: ClassifiedError, retries: int) -> bool:
        return error.code not in retryable_codes or retries > max_retries

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                retries = 0
                while True:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        classified = classify_error(e, {"operation": func.__name__})
                        retries += 1
                        if should_stop(classified, retries):
                            if classified is e:
                                raise
                            raise classified from e
                        delay = next_delay(retries)
                        if on_retry:
                            on_retry(retries, classified, delay)
                        logger.warning(
                            f"Retry {retries}/{max_retries} for {func.__name__} "
                            f"after {delay:.2f}s due to {classified.code.value}"
                        )
                        await asyncio.sleep(delay)

            return cast(F, async_wrapper)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            retries = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    classified = classify_error(e, {"operation": func.__name__})
                    retries += 1
                    if should_stop(classified, retries):
                        if classified is e:
                            raise
                        raise classified from e
                    delay = next_delay(retries)
                    if on_retry:
                        on_retry(retries, classified, delay)
                    logger.warning(
                        f"Retry {retries}/{max_retries} for {func.__name__} "
                        f"after {delay:.2f}s due to {classified.code.value}"
                    )
                    time.sleep(delay)

        return cast(F, sync_wrapper)

    return decorator


def error_response(
    error: Union[ClassifiedError, BaseException],
    include_details: bool = True
) -> Dict[str, Any]:
    """
    Build the payload the UI layer renders for a failure.

    Args:
        error: The error to describe
        include_details: Whether to include error details

    Returns:
        Dictionary with status, code, message, recoverable flag and suggestions
    """
    if not isinstance(error, ClassifiedError):
        error = classify_error(error)

    response = {
        "status": "error",
        "code": error.code.value,
        "message": error.message,
        "recoverable": error.recoverable,
        "notify_user": should_notify_user(error.code),
        "suggestions": error.suggestions,
    }
    if include_details and error.details:
        response["details"] = dict(error.details)
    return response


def log_error(
    error: Union[ClassifiedError, BaseException],
    level: int = logging.ERROR,
    include_stack_trace: bool = True,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log an error with standardized format.

    Args:
        error: The error to log
        level: Logging level
        include_stack_trace: Whether to include stack trace
        context: Additional context to include
    """
    if not isinstance(error, ClassifiedError):
        error = classify_error(error, context)
    elif context:
        error.context.update(context)

    message = f"ERROR [{error.code.value}]: {error.message}"

    if error.context:
        context_str = ", ".join(f"{k}={v}" for k, v in error.context.items() if k != "timestamp")
        message += f" (context: {context_str})"

    if error.cause:
        message += f" caused by {type(error.cause).__name__}: {error.cause}"

    if include_stack_trace and error.__traceback__ is not None:
        message += "\n" + "".join(traceback.format_exception(type(error), error, error.__traceback__))

    logger.log(level, message)
