"""Chat completion client for the LLM collaborator."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from code_iterator.config import Settings
from code_iterator.errors import CompletionTimeoutError, TransportFailureError
from code_iterator.protocol import LLM_RESPONSE_FRAME, completion_text, push_frame
from code_iterator.registry import SessionChannelRegistry

USER_AGENT = "code-iterator/0.1"
MAX_ERROR_DETAIL_CHARS = 300


class LLMClient:
    """Ask the completion endpoint for Python code and push the reply to the open channel.

    The client keeps no state between calls apart from the pooled HTTP connection.
    """

    def __init__(
        self,
        settings: Settings,
        registry: SessionChannelRegistry,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.llm_timeout_seconds),
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    def build_payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": self._settings.system_prompt},
                {"role": "user", "content": prompt},
            ],
        }

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        return headers

    async def fetch_completion(self, prompt: str) -> str:
        """Return ``choices[0].message.content`` and push it as an ``LLMResponse`` frame.

        Raises:
            CompletionTimeoutError: the call exceeded ``llm_timeout_seconds``.
            TransportFailureError: connection failure or non-success status.
            EmptyResponseError: the provider replied without a body.
            MalformedEnvelopeError: the body is not a valid completion.
        """

        url = self._settings.completions_url
        try:
            async with asyncio.timeout(self._settings.llm_timeout_seconds):
                response = await self._client.post(url, json=self.build_payload(prompt), headers=self._headers())
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise CompletionTimeoutError(f"no completion within {self._settings.llm_timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise TransportFailureError(f"{type(exc).__name__}: {exc}") from exc

        if response.is_error:
            detail = response.text.strip()[:MAX_ERROR_DETAIL_CHARS]
            raise TransportFailureError(f"http {response.status_code}: {detail}" if detail else f"http {response.status_code}")

        text = completion_text(response.content)
        logger.info("llm.completion model={} chars={}", self._settings.model, len(text))
        await self._registry.push(push_frame(LLM_RESPONSE_FRAME, text))
        return text

    async def aclose(self) -> None:
        await self._client.aclose()
