"""LLM client — HTTP connection to the generative-language backend.

The pipeline injects an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` identifies which pipeline stage is calling (e.g. "motif", "plot",
"puzzle"). GeminiLLM uses it to pick a model from MODEL_MAP; test doubles
use it to script per-stage responses.

Production code constructs a GeminiLLM from config and passes it to the
orchestrator. Tests use StubLLM (defined in the test helpers) instead.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# Stage → task type → model
# ---------------------------------------------------------------------------

TaskType = Literal["translation", "story", "puzzle", "motif", "general"]

MODEL_MAP: dict[str, str] = {
    "translation": "gemini-2.0-flash",
    "story": "gemini-2.0-flash",
    "puzzle": "gemini-2.0-flash",
    "motif": "gemini-2.0-flash",
    "general": "gemini-2.0-flash",
}

STAGE_TASKS: dict[str, TaskType] = {
    "spots": "general",
    "motif": "motif",
    "plot": "story",
    "puzzle": "puzzle",
    "meta_puzzle": "puzzle",
    "title": "story",
    "preview": "story",
    "grounded_puzzle": "general",
}


def model_for_stage(stage: str, model_map: dict[str, str] | None = None) -> str:
    models = model_map or MODEL_MAP
    task = STAGE_TASKS.get(stage, "general")
    return models.get(task, MODEL_MAP[task])


# ---------------------------------------------------------------------------
# GeminiLLM — connects to the generateContent endpoint
# ---------------------------------------------------------------------------

class GeminiLLM:
    """Async HTTP client for the Gemini generateContent API.

    Request:  POST {base_url}/v1beta/models/{model}:generateContent?key=...
              {"contents": [{"parts": [{"text": prompt}]}]}
    Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

    Args:
        api_key:   Gemini API key. Required.
        base_url:  API root, defaults to the public endpoint.
        model_map: Task type → model name override. Missing entries fall
                   back to MODEL_MAP.
        timeout:   HTTP timeout in seconds. Defaults to 300.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        model_map: dict[str, str] | None = None,
        timeout: float = 300.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model_map = {**MODEL_MAP, **(model_map or {})}
        self._timeout = timeout

    def _build_request(self, stage: str, prompt: str) -> tuple[str, dict, dict]:
        """Return (url, params, body) for one stage call."""
        model = model_for_stage(stage, self._model_map)
        url = f"{self._base_url}/v1beta/models/{model}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        return url, {"key": self._api_key}, body

    def _parse_response(self, data: dict) -> str:
        """Extract candidates[0].content.parts[0].text."""
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected response format from Gemini backend") from e
        if not isinstance(text, str):
            raise LLMError("Unexpected response format from Gemini backend")
        return text

    async def __call__(self, stage: str, prompt: str) -> str:
        url, params, body = self._build_request(stage, prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    url, params=params, json=body,
                    headers={"Content-Type": "application/json"},
                )
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM backend request failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# LLMError — raised by GeminiLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
