"""
Application Logger

Logging setup for the comparator core. Everything logs through the standard
``logging`` module under the ``comparator`` hierarchy; this module adds:

- ``JsonFormatter`` for one-object-per-line output, with structured fields
  from ``extra={"data": {...}}`` lifted to the top level
- ``ContextAdapter``, a ``LoggerAdapter`` that stamps every record with a
  fixed context such as the service, circuit key or cache namespace
- ``configure_logger`` / ``configure_from_settings`` to install handlers
- ``log_execution_time`` to time sync and async operations
"""

import os
import sys
import json
import time
import logging
import datetime
import functools
import inspect
from typing import Dict, Any, Optional, Union, Callable, TypeVar

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-36s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

APP_LOGGER_NAME = "comparator"
ENV_PREFIX = "COMPARATOR_LOG_"

# Attributes every LogRecord has; anything else was passed through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

F = TypeVar('F', bound=Callable[..., Any])

__all__ = [
    'configure_logger',
    'configure_from_settings',
    'get_logger',
    'ContextAdapter',
    'JsonFormatter',
    'bind_context',
    'app_logger',
    'log_execution_time'
]


class JsonFormatter(logging.Formatter):
    """
    Render each record as a single JSON object.

    Structured fields come from ``record.data`` (what ``ContextAdapter`` and
    ``log_execution_time`` attach) and from any other non-standard attribute
    set through ``extra``. Timestamps are UTC ISO-8601.
    """

    def __init__(self, indent: Optional[int] = None, static_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.indent = indent
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = dict(self.static_fields)
        payload.update({
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.timezone.utc
            ).isoformat(),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno
        })

        for attr, value in vars(record).items():
            if attr not in _RESERVED_ATTRS and attr != "data":
                payload[attr] = value

        data = getattr(record, "data", None)
        if isinstance(data, dict):
            payload.update(data)

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        return json.dumps(payload, indent=self.indent, default=str)


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logger(
    name: str = APP_LOGGER_NAME,
    level: Union[str, int] = logging.INFO,
    use_json: bool = False,
    log_file: Optional[str] = None,
    console_output: bool = True,
    format_string: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT
) -> logging.Logger:
    """
    Install handlers on ``name``, replacing any it already has.

    Args:
        name: Logger name, the ``comparator`` root by default
        level: Level name or number
        use_json: Emit ``JsonFormatter`` output instead of the text format
        log_file: Also append to this file, creating its directory
        console_output: Write to stdout
        format_string: Text format used when ``use_json`` is false
        date_format: Date format used when ``use_json`` is false

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if use_json:
        formatter: logging.Formatter = JsonFormatter(static_fields={"app": APP_LOGGER_NAME})
    else:
        formatter = logging.Formatter(format_string, date_format)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            directory = os.path.dirname(log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not open log file {log_file}: {e}")

    # Library code must not double-log through the root logger
    logger.propagate = not logger.handlers
    return logger


def configure_from_settings(settings: Any, name: str = APP_LOGGER_NAME) -> logging.Logger:
    """Configure from a ``LoggingConfig`` (``level``, ``use_json``, ``file_path``)."""
    return configure_logger(
        name=name,
        level=settings.level,
        use_json=settings.use_json,
        log_file=settings.file_path
    )


def get_logger(name: str, parent: Optional[logging.Logger] = None) -> logging.Logger:
    """Get a logger by name, optionally as a child of ``parent``."""
    if parent is not None:
        return parent.getChild(name)
    return logging.getLogger(name)


class ContextAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attaches a fixed context to every record.

    The context lands in ``record.data``; per-call ``extra={"data": {...}}``
    values win over bound ones with the same name.

        log = bind_context(logger, service="ai-provider")
        log.bind(circuit="ai-provider:invoke:claude").warning("Retrying")
    """

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(context or {}))

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self.extra)

    def process(self, msg: Any, kwargs: Dict[str, Any]):
        extra = dict(kwargs.get("extra") or {})
        data = dict(self.extra)
        data.update(extra.get("data") or {})
        extra["data"] = data
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> 'ContextAdapter':
        """Return a new adapter whose context adds ``context`` to this one."""
        merged = dict(self.extra)
        merged.update(context)
        return ContextAdapter(self.logger, merged)


def bind_context(logger: Union[str, logging.Logger, None] = None, **context: Any) -> ContextAdapter:
    """Wrap ``logger`` (a name, a logger, or the app logger) with ``context``."""
    if logger is None:
        logger = app_logger
    elif isinstance(logger, str):
        logger = logging.getLogger(logger)
    return ContextAdapter(logger, context)


def get_app_logger() -> logging.Logger:
    """
    Get the ``comparator`` logger, configuring it on first use.

    First-use settings come from ``COMPARATOR_LOG_LEVEL``,
    ``COMPARATOR_LOG_JSON`` and ``COMPARATOR_LOG_FILE``.
    """
    logger = logging.getLogger(APP_LOGGER_NAME)
    if logger.handlers:
        return logger

    return configure_logger(
        name=APP_LOGGER_NAME,
        level=os.environ.get(f"{ENV_PREFIX}LEVEL", "INFO"),
        use_json=os.environ.get(f"{ENV_PREFIX}JSON", "false").lower() in ("1", "true", "yes"),
        log_file=os.environ.get(f"{ENV_PREFIX}FILE")
    )


app_logger = get_app_logger()


def log_execution_time(
    logger: Union[logging.Logger, logging.LoggerAdapter, None] = None,
    operation: Optional[str] = None,
    slow_threshold: Optional[float] = None
) -> Callable[[F], F]:
    """
    Log how long a sync or async function takes.

    Successful calls are logged at DEBUG, or WARNING when they take longer
    than ``slow_threshold`` seconds; failures are logged at ERROR and
    re-raised. Each record carries ``operation``, ``duration_ms`` and
    ``outcome`` as structured data.
    """
    def decorator(func: F) -> F:
        name = operation or func.__qualname__

        def emit(started: float, error: Optional[BaseException]) -> None:
            target = logger or get_app_logger()
            elapsed = time.perf_counter() - started
            data = {
                "operation": name,
                "duration_ms": round(elapsed * 1000, 3),
                "outcome": "error" if error is not None else "ok"
            }
            if error is not None:
                target.error(f"{name} failed after {elapsed:.3f}s: {error}", extra={"data": data})
            elif slow_threshold is not None and elapsed > slow_threshold:
                target.warning(f"{name} slow: {elapsed:.3f}s", extra={"data": data})
            else:
                target.debug(f"{name} took {elapsed:.3f}s", extra={"data": data})

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                emit(started, e)
                raise
            emit(started, None)
            return result

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                emit(started, e)
                raise
            emit(started, None)
            return result

        return async_wrapper if inspect.iscoroutinefunction(func) else wrapper
    return decorator
