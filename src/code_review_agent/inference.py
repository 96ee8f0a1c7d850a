"""Text-generation clients used to produce reviews."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Protocol

import httpx

from code_review_agent.config_schema import AgentConfig

logger = logging.getLogger("code_review_agent")

ACCOUNT_ID_ENV_VAR = "CLOUDFLARE_ACCOUNT_ID"
API_TOKEN_ENV_VAR = "CLOUDFLARE_API_TOKEN"


class InferenceError(Exception):
    """The text-generation capability failed or timed out."""


class InferenceClient(Protocol):
    async def generate(self, prompt: str, max_tokens: int) -> str: ...


class WorkersAIClient:
    """Calls a Workers AI text-generation model over its REST API.

    Requests are non-streaming: ``{"prompt", "stream": false, "max_tokens"}``
    and the generated text is read from ``result.response``.
    """

    def __init__(
        self,
        account_id: str,
        api_token: str,
        model: str,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._url = f"{base_url}/accounts/{account_id}/ai/run/{model}"
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=timeout,
            transport=transport,
        )

    async def generate(self, prompt: str, max_tokens: int) -> str:
        payload = {"prompt": prompt, "stream": False, "max_tokens": max_tokens}
        try:
            resp = await self._client.post(self._url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise InferenceError(
                f"{self.model} returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise InferenceError(f"{self.model} request failed: {exc}") from exc

        result = data.get("result") if isinstance(data, dict) else None
        text = result.get("response") if isinstance(result, dict) else None
        if not isinstance(text, str):
            raise InferenceError(f"{self.model} returned no response text")
        return text

    async def aclose(self) -> None:
        await self._client.aclose()


class UnconfiguredInference:
    """Stands in when no credentials are set; every review fails cleanly."""

    async def generate(self, prompt: str, max_tokens: int) -> str:
        del prompt, max_tokens
        raise InferenceError(
            f"inference is not configured (set {ACCOUNT_ID_ENV_VAR} and {API_TOKEN_ENV_VAR})"
        )


async def generate_with_timeout(
    client: InferenceClient,
    prompt: str,
    max_tokens: int,
    timeout: float,
) -> str:
    """Run one generation, turning a stall past ``timeout`` into InferenceError."""
    try:
        return await asyncio.wait_for(client.generate(prompt, max_tokens), timeout=timeout)
    except TimeoutError as exc:
        raise InferenceError(f"inference timed out after {timeout:g}s") from exc


def build_inference_client(config: AgentConfig) -> InferenceClient:
    account_id = os.environ.get(ACCOUNT_ID_ENV_VAR)
    api_token = os.environ.get(API_TOKEN_ENV_VAR)
    if not account_id or not api_token:
        logger.info("No inference credentials, reviews will fail until configured")
        return UnconfiguredInference()
    return WorkersAIClient(
        account_id=account_id,
        api_token=api_token,
        model=config.model,
        base_url=config.inference_base_url,
        timeout=config.inference_timeout_seconds,
    )
