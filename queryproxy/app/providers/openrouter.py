"""OpenRouter chat-completions provider.

OpenRouter speaks the OpenAI chat-completions dialect, plus two attribution
headers (HTTP-Referer and X-Title) identifying the calling site.
"""

import json
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from queryproxy.app.core.logging import get_logger
from queryproxy.app.exceptions import UpstreamUnavailable
from queryproxy.app.providers.base import BaseProvider, ProbeResult

logger = get_logger(__name__)

CHAT_COMPLETIONS = "/chat/completions"


def _error_field(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return None


def extract_error_message(status_code: int, body: str) -> str:
    """Prefer ``error.message`` from a JSON body, else a truncated raw body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return f"Provider Error ({status_code}): {body[:100]}"
    return _error_field(data) or f"Provider Error ({status_code})"


def probe_error_message(status_code: int, body: str) -> str:
    """Failure text for an availability check: ``error.message`` or
    ``HTTP <status>: <body prefix>``."""
    try:
        message = _error_field(json.loads(body))
    except (json.JSONDecodeError, ValueError):
        message = None
    return message or f"HTTP {status_code}: {body[:100]}"


class OpenRouterProvider(BaseProvider):
    """Streams chat completions from OpenRouter and probes model availability."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        site_url: str = "",
        site_name: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0
    ):
        super().__init__(base_url, api_key, http_client, timeout)
        if site_url:
            self.headers["HTTP-Referer"] = site_url
        if site_name:
            self.headers["X-Title"] = site_name

    def build_payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        stream: bool = True,
        **options: Any,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        payload.update({k: v for k, v in options.items() if v is not None})
        payload["stream"] = stream
        return payload

    async def stream_chat(self, payload: Dict[str, Any]) -> AsyncGenerator[str, None]:
        """Send a streaming chat completion request, yielding raw body text.

        The upstream connection is released when the generator is closed,
        including when the consumer is cancelled mid-stream.

        Raises:
            UpstreamUnavailable: On a non-2xx status, or a transport failure
                before or during the stream
        """
        url = self._get_endpoint_url(CHAT_COMPLETIONS)
        payload["stream"] = True

        client = self._get_client()
        is_shared = self._http_client is not None

        try:
            async with client.stream("POST", url, headers=self.headers, json=payload) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise UpstreamUnavailable(
                        extract_error_message(resp.status_code, body),
                        upstream_status=resp.status_code,
                    )
                async for text in resp.aiter_text():
                    yield text
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(str(e) or "Network error") from e
        finally:
            if not is_shared:
                await client.aclose()

    async def probe_model(self, model: str, timeout: Optional[float] = None) -> ProbeResult:
        """Ask for a single token to find out whether a model is serving."""
        url = self._get_endpoint_url(CHAT_COMPLETIONS)
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": "test"}],
            "max_tokens": 1,
        }
        try:
            async with self._client_context() as client:
                resp = await client.post(
                    url, headers=self.headers, json=payload, timeout=timeout or self.timeout
                )
        except httpx.HTTPError as e:
            return ProbeResult(ok=False, message=str(e) or "Network error")

        if resp.status_code >= 400:
            return ProbeResult(
                ok=False,
                status_code=resp.status_code,
                message=probe_error_message(resp.status_code, resp.text),
                body=resp.text,
            )
        return ProbeResult(ok=True, status_code=resp.status_code)

    async def health_check(self, timeout: float = 2.0) -> bool:
        """Calls the /models endpoint with a short timeout."""
        if not self.configured:
            return False
        try:
            url = self._get_endpoint_url("/models")
            async with self._client_context() as client:
                resp = await client.get(url, headers=self.headers, timeout=timeout)
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Upstream health check failed: {e}")
            return False
