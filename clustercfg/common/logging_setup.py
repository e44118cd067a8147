"""
Structured Logging Setup

Consistent logging configuration for the locator and member services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json


# Attributes every LogRecord carries; anything else on a record came from extra
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "service",
}


class JsonFormatter(logging.Formatter):
    """JSON log formatter: one object per line, extra fields at top level"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_ATTRS
        )
        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds service name and bound context to all logs.

    Context is carried by the adapter instance, never by global logging
    state, so adapters bound in concurrent tasks or worker threads do not
    see each other's fields.
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        extra.setdefault("service", "unknown")
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "ServiceLoggerAdapter":
        """
        Adapter that adds context fields to every record it emits.

        Usage:
            log = logger.bind(member_id="server-1", operation="join")
            log.info("Resolving configuration")
        """
        return ServiceLoggerAdapter(self.logger, {**self.extra, **context})


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        service_name: Name of the component (e.g., "locator", "store")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"clustercfg.{service_name}")
    logger.setLevel(numeric_level)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with component context.

    Args:
        service_name: Name of the component

    Returns:
        Logger adapter with the component name in all logs
    """
    log_level = os.environ.get("CLUSTERCFG_LOG_LEVEL", "INFO")
    json_format = os.environ.get("CLUSTERCFG_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def log_artifact_event(
    logger: logging.Logger,
    action: str,
    record_name: str,
    stored_file_name: str,
    success: bool = True,
) -> None:
    """Log an artifact deploy/install/remove"""
    if success:
        logger.info(
            f"{action} {record_name}/{stored_file_name}",
            extra={"record": record_name, "artifact": stored_file_name, "action": action},
        )
    else:
        logger.error(
            f"Failed to {action.lower()} {record_name}/{stored_file_name}",
            extra={"record": record_name, "artifact": stored_file_name, "action": action},
        )


def log_member_event(
    logger: logging.Logger,
    member_id: str,
    state: str,
    groups: list[str] | None = None,
) -> None:
    """Log a member session transition"""
    logger.info(
        f"Member {member_id} -> {state}",
        extra={"member_id": member_id, "state": state, "groups": groups or []},
    )
