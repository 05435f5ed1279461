"""Core utilities for the query proxy."""

from queryproxy.app.core.config import Settings, settings
from queryproxy.app.core.http_client import init_http_client
from queryproxy.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "init_http_client",
    "get_log_context",
    "get_logger",
    "setup_logging",
]
