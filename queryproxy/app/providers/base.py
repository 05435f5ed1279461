from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, Optional

import httpx


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a 1-token availability probe."""
    ok: bool
    status_code: Optional[int] = None
    message: Optional[str] = None
    body: str = ""


class BaseProvider(ABC):
    """Base class for upstream chat-completion services.

    The application lifespan attaches one shared httpx.AsyncClient through
    the ``http_client`` setter. Without it, each call opens and closes its
    own client.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0
    ):
        """Initialize the provider.

        Args:
            base_url: The API base URL
            api_key: Bearer key; empty means the provider is not configured
            http_client: Optional shared HTTP client for connection pooling
            timeout: Per-request timeout in seconds for per-call clients
        """
        self._http_client = http_client
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.headers: Dict[str, str] = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        return self._http_client

    @http_client.setter
    def http_client(self, client: Optional[httpx.AsyncClient]) -> None:
        self._http_client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return httpx.AsyncClient(timeout=self.timeout)

    @asynccontextmanager
    async def _client_context(self):
        """Yield the shared client, or a per-call one that is closed afterwards."""
        client = self._get_client()
        is_shared = self._http_client is not None
        try:
            yield client
        finally:
            if not is_shared:
                await client.aclose()

    def _get_endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    @abstractmethod
    def stream_chat(self, payload: Dict[str, Any]) -> AsyncGenerator[str, None]:
        """Send a streaming chat completion request, yielding raw body text.

        Args:
            payload: The request payload containing model, messages, etc.

        Yields:
            Decoded body text as it arrives; chunk boundaries are arbitrary
        """

    @abstractmethod
    async def probe_model(self, model: str, timeout: Optional[float] = None) -> ProbeResult:
        """Ask one model for a single token and report whether it answered."""

    @abstractmethod
    async def health_check(self, timeout: float = 2.0) -> bool:
        """Check if the upstream is reachable with the configured key."""
