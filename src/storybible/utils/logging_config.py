"""Logging configuration for the story bible pipeline.

Provides JSON-formatted logging for parsing run diagnostics, plus a context
manager that brackets every pipeline stage with started/completed/failed lines.
"""

import json
import logging
import sys
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Attributes present on every LogRecord; anything else came in via ``extra``
_STANDARD_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "instructor")


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured log records.

    Each line carries:
    - timestamp: ISO 8601 UTC timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - extra: Stage context passed through ``extra=`` (stage, status, duration_ms, ...)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, ensure_ascii=False, default=str)


def configure_logging(
    level: Union[str, int] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    json_format: bool = False,
    console_output: bool = True,
) -> None:
    """Configure logging for a pipeline run.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional file path for log output (default: None = console only)
        json_format: If True, use JSON formatter; if False, use standard format
        console_output: If True, log to stdout (default: True)

    Example:
        >>> configure_logging(level="INFO", log_file="logs/bible.log", json_format=True)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(
        f"Logging configured: level={logging.getLevelName(root_logger.level)}, json_format={json_format}"
    )


@contextmanager
def pipeline_stage_logger(stage_name: str, **context):
    """Context manager for logging one pipeline stage.

    Logs entry and exit of the stage with timing information. A failure is
    logged at ERROR and re-raised.

    Args:
        stage_name: Name of the pipeline stage
        **context: Additional context fields to include in logs

    Yields:
        Logger instance for the stage

    Example:
        >>> with pipeline_stage_logger("story_dna", stage=1) as logger:
        ...     logger.info("Subgenre: Historical")
    """
    logger = logging.getLogger(f"storybible.stage.{stage_name}")

    start_time = datetime.now(UTC)
    logger.info(
        f"Starting pipeline stage: {stage_name}",
        extra={"stage_name": stage_name, "status": "started", **context},
    )

    try:
        yield logger
    except Exception as e:
        duration_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        logger.error(
            f"Failed pipeline stage: {stage_name}",
            extra={
                "stage_name": stage_name,
                "status": "failed",
                "duration_ms": round(duration_ms, 2),
                "error": str(e)[:200],
                **context,
            },
            exc_info=True,
        )
        raise

    duration_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    logger.info(
        f"Completed pipeline stage: {stage_name}",
        extra={
            "stage_name": stage_name,
            "status": "completed",
            "duration_ms": round(duration_ms, 2),
            **context,
        },
    )
