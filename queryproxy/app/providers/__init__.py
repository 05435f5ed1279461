"""Upstream providers package.

This package provides:
- Base provider interface (BaseProvider)
- The OpenRouter chat-completions provider (OpenRouterProvider)
"""

from queryproxy.app.providers.base import BaseProvider, ProbeResult
from queryproxy.app.providers.openrouter import (
    OpenRouterProvider,
    extract_error_message,
)

__all__ = [
    "BaseProvider",
    "OpenRouterProvider",
    "ProbeResult",
    "extract_error_message",
]
