"""
Monitoring for tilesparse.

Structured logging for the block-sparse pipeline: JSON/console formatters,
correlation IDs per pipeline run and per-stage timing records.

Example:
    ```python
    from tilesparse.monitoring import configure_logging, get_logger, log_stage

    configure_logging(level="INFO", json_format=False)
    logger = get_logger("tilesparse.app")

    with log_stage(logger, "multiply", n=512) as timer:
        out = block_sparse_mm(packed, rhs)
    ```
"""

from .structured_logging import (
    LogConfig,
    JSONFormatter,
    ConsoleFormatter,
    CorrelationContext,
    LogContext,
    StageTimer,
    configure_logging,
    get_logger,
    correlation_context,
    log_context,
    get_correlation_id,
    log_stage,
)

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
