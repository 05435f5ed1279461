"""API endpoints package for the query proxy."""

from queryproxy.app.api.chat import router as chat_router
from queryproxy.app.api.model_availability import router as model_availability_router

__all__ = [
    "chat_router",
    "model_availability_router",
]
