"""
Montage Logger - structured JSON logging with request correlation.

BASIC USAGE:
    from montage.logger import logger
    logger.info("feature_flag_evaluated", flag_key="dark_mode", enabled=True)

PROPAGATING TO THE DECISION AUTHORITY:
    from montage.logger import get_correlation_headers
    headers = get_correlation_headers()
"""

from .context import (
    clear_context,
    generate_request_id,
    get_correlation_headers,
    get_extra_context,
    get_request_id,
    inject_request_context,
    set_extra_context,
    set_request_id,
    with_request_context,
)
from .structured_logger import configure_logging, logger

__all__ = [
    "logger",
    "configure_logging",
    "get_request_id",
    "set_request_id",
    "generate_request_id",
    "get_correlation_headers",
    "get_extra_context",
    "set_extra_context",
    "clear_context",
    "inject_request_context",
    "with_request_context",
]
