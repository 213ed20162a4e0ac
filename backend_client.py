"""
backend_client.py - Generation backend contract and OpenAI-compatible upstream client

The gateway only depends on the GenerationBackend protocol. OpenAICompatibleBackend
implements it against llama-server (or any server exposing /health, /v1/models,
/v1/completions and /v1/chat/completions).
"""

import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
import requests

from ollama_schemas import ChatMessage, GenerationOptions

logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================

class BackendError(Exception):
    """A call to the generation backend failed."""


class BackendNotAvailableError(BackendError):
    """The generation backend reports itself as not ready."""


# ============================================================================
# Backend Contract
# ============================================================================

class GenerationBackend(Protocol):
    """Capability the gateway translates the Ollama protocol onto.

    Streaming calls are coroutines that resolve to an async iterator of text
    fragments; awaiting them is the "load" phase, iterating is generation.
    """

    def is_available(self) -> bool: ...

    async def generate(self, model: str, prompt: str, options: GenerationOptions) -> str: ...

    async def stream_generate(
        self, model: str, prompt: str, options: GenerationOptions
    ) -> AsyncIterator[str]: ...

    async def chat(
        self, model: str, messages: Sequence[ChatMessage], options: GenerationOptions
    ) -> str: ...

    async def stream_chat(
        self, model: str, messages: Sequence[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]: ...

    async def list_models(self) -> List[str]: ...


# ============================================================================
# SSE Chunk Extraction
# ============================================================================

def _completion_fragment(chunk: Dict[str, Any]) -> Optional[str]:
    choices = chunk.get("choices") or []
    if not choices:
        return None
    return choices[0].get("text")


def _chat_fragment(chunk: Dict[str, Any]) -> Optional[str]:
    # The final usage chunk has "choices": [] (empty)
    choices = chunk.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    return delta.get("content")


def _error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    error = payload["error"]
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


# ============================================================================
# OpenAI-Compatible Backend
# ============================================================================

class OpenAICompatibleBackend:
    """Generation backend that proxies to an OpenAI-compatible inference server."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        health_timeout: float = 5.0,
        default_model: str = "default",
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.default_model = default_model

    def is_available(self) -> bool:
        """
        Check if the upstream is running and responsive.

        Returns:
            True if /health answers 200, False otherwise
        """
        try:
            response = requests.get(f"{self.base_url}/health", timeout=self.health_timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Backend health check failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Backend not ready: /health returned {response.status_code}")
            return False
        return True

    async def generate(self, model: str, prompt: str, options: GenerationOptions) -> str:
        payload = self._build_payload(model, options, stream=False)
        payload["prompt"] = self._completion_prompt(prompt, options)
        result = await self._post_json("/v1/completions", payload)
        try:
            return result["choices"][0]["text"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Malformed completion response from backend: {e}") from e

    async def stream_generate(
        self, model: str, prompt: str, options: GenerationOptions
    ) -> AsyncIterator[str]:
        payload = self._build_payload(model, options, stream=True)
        payload["prompt"] = self._completion_prompt(prompt, options)
        return await self._open_stream("/v1/completions", payload, _completion_fragment)

    async def chat(
        self, model: str, messages: Sequence[ChatMessage], options: GenerationOptions
    ) -> str:
        payload = self._build_payload(model, options, stream=False)
        payload["messages"] = [m.model_dump() for m in messages]
        result = await self._post_json("/v1/chat/completions", payload)
        try:
            return result["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise BackendError(f"Malformed chat response from backend: {e}") from e

    async def stream_chat(
        self, model: str, messages: Sequence[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]:
        payload = self._build_payload(model, options, stream=True)
        payload["messages"] = [m.model_dump() for m in messages]
        return await self._open_stream("/v1/chat/completions", payload, _chat_fragment)

    async def list_models(self) -> List[str]:
        try:
            async with httpx.AsyncClient(timeout=self.health_timeout) as client:
                response = await client.get(f"{self.base_url}/v1/models")
        except httpx.HTTPError as e:
            raise BackendError(f"Failed to reach backend: {e}") from e

        if response.status_code != 200:
            raise BackendError(f"Backend error listing models: {response.status_code} - {response.text}")

        try:
            entries = response.json().get("data", [])
            return [entry["id"] for entry in entries if "id" in entry]
        except (ValueError, AttributeError, TypeError, KeyError) as e:
            raise BackendError(f"Malformed model list from backend: {e}") from e

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    def _build_payload(self, model: str, options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        """Build the upstream payload from Ollama generation options."""
        payload: Dict[str, Any] = {
            "model": self.default_model if model == "default" else model,
            "stream": stream,
        }

        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.num_predict is not None and options.num_predict >= 0:
            payload["max_tokens"] = options.num_predict
        if options.seed is not None:
            payload["seed"] = options.seed
        if options.stop is not None:
            payload["stop"] = options.stop

        # Extensions (llama-server supports these)
        if options.top_k is not None:
            payload["top_k"] = options.top_k
        if options.repeat_penalty is not None:
            payload["repeat_penalty"] = options.repeat_penalty
        if options.presence_penalty is not None:
            payload["presence_penalty"] = options.presence_penalty
        if options.frequency_penalty is not None:
            payload["frequency_penalty"] = options.frequency_penalty

        return payload

    @staticmethod
    def _completion_prompt(prompt: str, options: GenerationOptions) -> str:
        if options.system:
            return f"{options.system}\n\n{prompt}"
        return prompt

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload)
        except httpx.TimeoutException as e:
            raise BackendError("Request to backend timed out") from e
        except httpx.HTTPError as e:
            raise BackendError(f"Failed to reach backend: {e}") from e

        if response.status_code != 200:
            logger.error(f"Backend returned error: {response.status_code} - {response.text}")
            raise BackendError(f"Backend error: {response.status_code} - {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Malformed response from backend: {e}") from e

    async def _open_stream(
        self,
        path: str,
        payload: Dict[str, Any],
        extract: Callable[[Dict[str, Any]], Optional[str]],
    ) -> AsyncIterator[str]:
        """Send a streaming request and return an iterator over its text fragments.

        Upstream status errors surface here, before any fragment is produced.
        """
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            request = client.build_request("POST", f"{self.base_url}{path}", json=payload)
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            await client.aclose()
            raise BackendError("Request to backend timed out") from e
        except httpx.HTTPError as e:
            await client.aclose()
            raise BackendError(f"Failed to reach backend: {e}") from e

        if response.status_code != 200:
            error_text = (await response.aread()).decode(errors="replace")
            await response.aclose()
            await client.aclose()
            raise BackendError(f"Backend error: {response.status_code} - {error_text}")

        return self._iter_fragments(client, response, extract)

    async def _iter_fragments(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        extract: Callable[[Dict[str, Any]], Optional[str]],
    ) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break

                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping unparseable SSE event: {data[:80]}")
                    continue

                error = _error_message(chunk)
                if error is not None:
                    raise BackendError(f"Backend stream error: {error}")

                fragment = extract(chunk)
                if fragment:
                    yield fragment
        except httpx.TimeoutException as e:
            raise BackendError("Backend stream timed out") from e
        except httpx.HTTPError as e:
            raise BackendError(f"Backend stream interrupted: {e}") from e
        finally:
            await response.aclose()
            await client.aclose()
