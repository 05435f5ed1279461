"""Service dependencies for FastAPI dependency injection.

The application factory stores every governance service on ``app.state``;
these providers hand them to route handlers.

Usage:
    from queryproxy.app.api.dependencies import OrchestratorDep

    @router.post("/api/query")
    async def query(orchestrator: OrchestratorDep):
        ...
"""

from typing import Annotated

from fastapi import Depends, Request

from queryproxy.app.middleware.rate_limit import RateLimiter
from queryproxy.app.services.model_availability import ModelAvailabilityChecker
from queryproxy.app.services.orchestrator import QueryOrchestrator


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_orchestrator(request: Request) -> QueryOrchestrator:
    return request.app.state.orchestrator


def get_availability_checker(request: Request) -> ModelAvailabilityChecker:
    return request.app.state.availability_checker


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
OrchestratorDep = Annotated[QueryOrchestrator, Depends(get_orchestrator)]
AvailabilityCheckerDep = Annotated[ModelAvailabilityChecker, Depends(get_availability_checker)]

__all__ = [
    "AvailabilityCheckerDep",
    "OrchestratorDep",
    "RateLimiterDep",
    "get_availability_checker",
    "get_orchestrator",
    "get_rate_limiter",
]
