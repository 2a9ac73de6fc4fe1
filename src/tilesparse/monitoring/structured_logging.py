"""
tilesparse Structured Logging Module

Provides structured logging for the analyze -> pack -> multiply pipeline:
- JSON formatting for log aggregation
- Correlation IDs tying the records of one pipeline run together
- Contextual logging with automatic metadata
- Per-stage timing records (log_stage)

Usage:
    from tilesparse.monitoring.structured_logging import (
        get_logger, configure_logging, correlation_context, log_stage
    )

    configure_logging(level="INFO", json_format=True)
    logger = get_logger(__name__)

    with correlation_context():
        with log_stage(logger, "pack", device=device) as stage:
            packed = pack_block_sparse(counts)
            stage.context["num_blocks"] = packed.num_blocks
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import torch

# Context variable for correlation ID (thread-safe)
_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

# Context variable for additional context
_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)

# Global configuration lock
_config_lock = threading.Lock()

# Loggers handed out by get_logger()
_configured_loggers: dict[str, logging.Logger] = {}

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
})


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    json_format: bool = True
    include_timestamp: bool = True
    include_caller: bool = True
    include_correlation_id: bool = True
    output_file: str | None = None
    max_message_length: int = 10000
    module_levels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "level": self.level,
            "json_format": self.json_format,
            "include_timestamp": self.include_timestamp,
            "include_caller": self.include_caller,
            "include_correlation_id": self.include_correlation_id,
            "output_file": self.output_file,
            "max_message_length": self.max_message_length,
            "module_levels": self.module_levels,
        }


# Global configuration
_global_config = LogConfig()


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRIBUTES}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, config: LogConfig):
        super().__init__()
        self.config = config

    def _truncate(self, value: Any) -> Any:
        if isinstance(value, str) and len(value) > self.config.max_message_length:
            return value[:self.config.max_message_length] + "...[TRUNCATED]"
        return value

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": self._truncate(record.getMessage()),
        }

        if self.config.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        if self.config.include_correlation_id:
            correlation_id = _correlation_id.get()
            if correlation_id:
                log_entry["correlation_id"] = correlation_id

        if self.config.include_caller:
            log_entry["caller"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        context = _log_context.get()
        if context:
            log_entry["context"] = context

        extra = {k: self._truncate(v) for k, v in _extra_fields(record).items()}
        if extra:
            log_entry["extra"] = extra

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter with colors."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, config: LogConfig):
        super().__init__()
        self.config = config
        self._use_colors = sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console."""
        parts = []

        if self.config.include_timestamp:
            timestamp = datetime.fromtimestamp(record.created).strftime(
                "%Y-%m-%d %H:%M:%S.%f"
            )[:-3]
            parts.append(f"[{timestamp}]")

        level = record.levelname
        if self._use_colors:
            color = self.COLORS.get(level, "")
            reset = self.COLORS["RESET"]
            parts.append(f"{color}{level:8}{reset}")
        else:
            parts.append(f"{level:8}")

        if self.config.include_correlation_id:
            correlation_id = _correlation_id.get()
            if correlation_id:
                parts.append(f"[{correlation_id[:8]}]")

        parts.append(f"[{record.name}]")
        parts.append(record.getMessage())

        extra_parts = [f"{k}={v}" for k, v in _extra_fields(record).items()]
        if extra_parts:
            parts.append(f"| {' '.join(extra_parts)}")

        result = " ".join(parts)

        if record.exc_info:
            result += "\n" + "".join(traceback.format_exception(*record.exc_info))

        return result


class CorrelationContext:
    """Context manager for correlation ID propagation."""

    def __init__(self, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self._token: contextvars.Token | None = None

    def __enter__(self) -> "CorrelationContext":
        self._token = _correlation_id.set(self.correlation_id)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _correlation_id.reset(self._token)


class LogContext:
    """Context manager for adding contextual information to logs."""

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._token: contextvars.Token | None = None

    def __enter__(self) -> "LogContext":
        new_context = {**_log_context.get(), **self.context}
        self._token = _log_context.set(new_context)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    output_file: str | None = None,
    module_levels: dict[str, str] | None = None,
    **kwargs: Any
) -> LogConfig:
    """
    Configure global logging settings.

    Args:
        level: Default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True) or human-readable (False)
        output_file: Optional file path for log output
        module_levels: Per-module log level overrides
        **kwargs: Additional LogConfig parameters

    Returns:
        The active LogConfig

    Example:
        configure_logging(
            level="DEBUG",
            json_format=False,
            module_levels={"tilesparse.kernels.spmm": "WARNING"}
        )
    """
    global _global_config

    with _config_lock:
        _global_config = LogConfig(
            level=level,
            json_format=json_format,
            output_file=output_file,
            module_levels=module_levels or {},
            **kwargs
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)  # Allow all, filter at handler

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        if json_format:
            formatter: logging.Formatter = JSONFormatter(_global_config)
        else:
            formatter = ConsoleFormatter(_global_config)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if output_file:
            file_handler = logging.FileHandler(output_file)
            file_handler.setLevel(getattr(logging, level))
            file_handler.setFormatter(JSONFormatter(_global_config))  # Always JSON for files
            root_logger.addHandler(file_handler)

        for module_name, module_level in _global_config.module_levels.items():
            logging.getLogger(module_name).setLevel(getattr(logging, module_level))

        for logger in _configured_loggers.values():
            _apply_config_to_logger(logger)

        return _global_config


def _apply_config_to_logger(logger: logging.Logger) -> None:
    module_level = _global_config.module_levels.get(logger.name)
    if module_level:
        logger.setLevel(getattr(logging, module_level))
    else:
        logger.setLevel(getattr(logging, _global_config.level))


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger that follows the configured levels.

    Args:
        name: Logger name (typically __name__)
    """
    with _config_lock:
        if name in _configured_loggers:
            return _configured_loggers[name]

        logger = logging.getLogger(name)
        _apply_config_to_logger(logger)
        _configured_loggers[name] = logger
        return logger


def correlation_context(correlation_id: str | None = None) -> CorrelationContext:
    """
    Create a correlation context for one pipeline run.

    Args:
        correlation_id: Optional ID to use (generates UUID if not provided)
    """
    return CorrelationContext(correlation_id)


def log_context(**kwargs: Any) -> LogContext:
    """
    Add contextual information to all logs within scope.

    Example:
        with log_context(rows=4096, cols=4096):
            logger.info("Packing")  # Includes rows, cols
    """
    return LogContext(**kwargs)


def get_correlation_id() -> str | None:
    """Get current correlation ID."""
    return _correlation_id.get()


class StageTimer:
    """
    Context manager timing one pipeline stage.

    On exit a single record is logged with the stage name, its wall-clock
    duration and whatever the caller put into ``context``. CUDA work is
    synchronized first so the duration covers the kernels the stage launched.
    """

    def __init__(
        self,
        logger: logging.Logger,
        stage: str,
        device: torch.device | None = None,
        level: str = "INFO",
        **context: Any
    ):
        self.logger = logger
        self.stage = stage
        self.device = torch.device(device) if device is not None else None
        self.level = getattr(logging, level)
        self.context = dict(context)
        self.duration_ms: float = 0.0
        self._start: float = 0.0

    def _synchronize(self) -> None:
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def __enter__(self) -> "StageTimer":
        self._synchronize()
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self._synchronize()
        self.duration_ms = (time.perf_counter() - self._start) * 1000

        extra = {
            "stage": self.stage,
            "duration_ms": round(self.duration_ms, 3),
            **self.context,
        }
        if exc_type is not None:
            extra["error_type"] = exc_type.__name__
            self.logger.log(self.level, f"Failed stage {self.stage}", extra=extra)
        else:
            self.logger.log(self.level, f"Completed stage {self.stage}", extra=extra)


def log_stage(
    logger: logging.Logger,
    stage: str,
    device: torch.device | None = None,
    level: str = "INFO",
    **context: Any
) -> StageTimer:
    """
    Time a pipeline stage and log the result.

    Example:
        with log_stage(logger, "multiply", device=out.device, n=512) as timer:
            block_sparse_mm(packed, rhs)
        print(timer.duration_ms)
    """
    return StageTimer(logger, stage, device, level, **context)


__all__ = [
    "LogConfig",
    "JSONFormatter",
    "ConsoleFormatter",
    "CorrelationContext",
    "LogContext",
    "StageTimer",
    "configure_logging",
    "get_logger",
    "correlation_context",
    "log_context",
    "get_correlation_id",
    "log_stage",
]
