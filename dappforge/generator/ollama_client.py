"""Ollama completion client used for Solidity code generation.

:meth:`OllamaClient.complete` sends a system/user prompt pair to
``/api/generate`` with low-temperature, wide-context options. If the code
model fails it retries once on the fallback model and raises
:class:`~dappforge.errors.ExternalServiceError` when neither answers.

Typical usage::

    client = OllamaClient(OllamaConfig(code_model="qwen2.5-coder:32b"))
    if await client.has_model(client.config.code_model):
        completion = await client.complete(GENERATE_SYSTEM_PROMPT, prompt)
        print(completion.text)
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, Field

from ..config import OllamaConfig
from ..errors import ExternalServiceError
from ..utils import print_warning


class Completion(BaseModel):
    """Text returned by the model that finally answered."""

    text: str
    model: str
    duration_ms: float = Field(default=0.0, description="Server-side generation time in ms")
    fallback_used: bool = False


class _ModelFailed(Exception):
    """One model could not produce a completion."""


class OllamaClient:
    """Async Ollama client bound to one :class:`OllamaConfig`.

    Args:
        config: Server URL, model pair, timeout and sampling options.
        transport: Optional httpx transport (tests pass a ``MockTransport``).
    """

    def __init__(
        self,
        config: OllamaConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or OllamaConfig()
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self.config.url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.timeout, connect=10.0),
            transport=self._transport,
        )

    def _payload(self, model: str, system: str, prompt: str) -> dict[str, Any]:
        return {
            "model": model,
            "system": system,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_ctx": self.config.context_window,
            },
        }

    async def _generate(
        self, client: httpx.AsyncClient, model: str, system: str, prompt: str
    ) -> Completion:
        try:
            response = await client.post("/api/generate", json=self._payload(model, system, prompt))
            response.raise_for_status()
            data = response.json()
        except httpx.ConnectError as exc:
            raise _ModelFailed(f"cannot connect to {self.base_url}") from exc
        except httpx.TimeoutException as exc:
            raise _ModelFailed(f"timed out after {self.config.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise _ModelFailed(
                f"HTTP {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise _ModelFailed(f"bad response: {exc}") from exc

        text = data.get("response") or ""
        if not text.strip():
            raise _ModelFailed("empty response")
        return Completion(
            text=text,
            model=data.get("model", model),
            # total_duration is in nanoseconds
            duration_ms=data.get("total_duration", 0) / 1_000_000.0,
        )

    async def complete(self, system: str, prompt: str) -> Completion:
        """Return the code model's answer, falling back to the second model.

        Raises:
            ExternalServiceError: If every configured model failed. The
                message lists each model's failure.
        """
        models = list(dict.fromkeys([self.config.code_model, self.config.code_model_fallback]))
        failures: list[str] = []
        async with self._client() as client:
            for index, model in enumerate(models):
                try:
                    completion = await self._generate(client, model, system, prompt)
                except _ModelFailed as exc:
                    failures.append(f"{model}: {exc}")
                    if index + 1 < len(models):
                        print_warning(f"{model} failed ({exc}); retrying with {models[index + 1]}")
                    continue
                return completion.model_copy(update={"fallback_used": index > 0})
        raise ExternalServiceError("ollama", "; ".join(failures))

    async def available_models(self) -> list[str]:
        """Model tags served by ``/api/tags``; empty when unreachable."""
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
                return [m.get("name", "") for m in response.json().get("models", [])]
        except (httpx.HTTPError, ValueError):
            return []

    async def has_model(self, model: str) -> bool:
        """True if *model* is served, with or without an explicit ``:latest`` tag."""
        names = await self.available_models()
        return model in names or f"{model}:latest" in names
