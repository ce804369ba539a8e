"""
Structured JSON logging for the feature flag engine.

USAGE:
    from montage.logger import logger
    logger.info("feature_flag_fallback", flag_key="dark_mode", reason="fallback_default")

HOW IT WORKS:
    1. Events are rendered as JSON by structlog
    2. Rendering happens through a QueueHandler, so a log call never blocks
       an evaluation on stdout I/O
    3. request_id and extra context fields are injected from contextvars

ENVIRONMENT VARIABLES:
    LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
    SERVICE_NAME: Service name stamped on every event (default: feature-flags)
    ENVIRONMENT: Environment stamped on every event (default: development)
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
import threading
from logging.handlers import QueueHandler, QueueListener
from queue import Queue
from typing import Any

import structlog

from .context import inject_request_context

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SERVICE_NAME = os.getenv("SERVICE_NAME", "feature-flags")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# =============================================================================
# SINGLETON STATE
# =============================================================================

_logger_instance: structlog.stdlib.BoundLogger | None = None
_logger_lock = threading.Lock()
_is_configured = False


def _service_tags(service: str, env: str):
    """Build a processor stamping service/env unless the event already has them."""

    def add_service_tags(
        logger_instance: Any,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("env", env)
        return event_dict

    return add_service_tags


def configure_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    level: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog once and return the shared logger.

    Safe to call repeatedly and from several threads: only the first call
    configures anything, later calls return the same logger.

    Args:
        service: Service name (default: SERVICE_NAME env var)
        env: Environment (default: ENVIRONMENT env var)
        level: Log level name (default: LOG_LEVEL env var)

    Example:
        logger = configure_logging(service="web-frontend", env="production")
        logger.info("engine_started", failure_threshold=5)
    """
    global _logger_instance, _is_configured

    if _is_configured and _logger_instance is not None:
        return _logger_instance

    with _logger_lock:
        if _is_configured and _logger_instance is not None:
            return _logger_instance

        resolved_service = service if service is not None else SERVICE_NAME
        resolved_env = env if env is not None else ENVIRONMENT
        level_name = (level or LOG_LEVEL).upper()
        resolved_level = getattr(logging, level_name, logging.INFO)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(resolved_level)

        # logger.info() -> QueueHandler -> Queue -> QueueListener -> stdout
        log_queue: Queue[logging.LogRecord] = Queue(maxsize=1000)
        queue_listener = QueueListener(
            log_queue,
            console_handler,
            respect_handler_level=True,
        )
        queue_listener.start()
        atexit.register(queue_listener.stop)

        logging.basicConfig(
            level=resolved_level,
            format="%(message)s",
            handlers=[QueueHandler(log_queue)],
        )

        # httpx logs every request at INFO; the engine logs its own outcomes
        logging.getLogger("httpx").setLevel(logging.WARNING)

        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                inject_request_context,
                _service_tags(resolved_service, resolved_env),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.EventRenamer("msg"),
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        _is_configured = True
        _logger_instance = structlog.get_logger()
        return _logger_instance


class LazyLoggerProxy:
    """
    Stand-in for the real logger that configures logging on first use.

    Importing montage.feature_flags therefore has no logging side effects,
    and applications can call configure_logging() with their own settings
    before the engine logs anything.
    """

    def __getattr__(self, attribute_name: str) -> Any:
        return getattr(configure_logging(), attribute_name)


logger = LazyLoggerProxy()
