"""
ollama_adapter.py - Ollama protocol adapter

Decodes Ollama generate/chat requests, dispatches them to the generation
backend in buffered or streamed form, and encodes the results as Ollama
response records with derived timing and token metrics.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, ValidationError

import server_config as config
from backend_client import BackendError, BackendNotAvailableError, GenerationBackend
from ollama_schemas import (
    ChatMessage,
    ChatResponse,
    GenerateResponse,
    GenerationOptions,
    ListModelsResponse,
    ModelDescriptor,
    ModelDetails,
    ResponseRecord,
    ShowModelResponse,
)

logger = logging.getLogger(__name__)

NANOSECONDS_PER_SECOND = 1_000_000_000

NDJSON_MEDIA_TYPE = "application/x-ndjson"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


# ============================================================================
# Token Estimation
# ============================================================================

def approximate_token_count(text: str) -> int:
    """Coarse token estimate (~4 characters per token) used only for reporting."""
    if not text:
        return 0
    return max(1, len(text) // 4)


# ============================================================================
# Parameter Decoding
# ============================================================================

class RequestDecodeError(ValueError):
    """The request body, its generation options or its messages could not be decoded."""


@dataclass(frozen=True)
class GenerationRequest:
    """Decoded client intent for one generate or chat call."""

    model: str
    prompt: str
    stream: bool
    options: GenerationOptions
    messages: Tuple[ChatMessage, ...] = ()

    @property
    def prompt_text(self) -> str:
        """Text the prompt token estimate is based on."""
        if self.messages:
            return "\n".join(m.content for m in self.messages)
        return self.prompt


def parse_body(body: bytes) -> Dict[str, Any]:
    """Parse a raw request body into a loosely-typed JSON object."""
    try:
        params = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RequestDecodeError(f"invalid JSON body: {e}") from e

    if not isinstance(params, dict):
        raise RequestDecodeError("request body must be a JSON object")
    return params


def json_string(params: Mapping[str, Any], key: str) -> Optional[str]:
    value = params.get(key)
    return value if isinstance(value, str) else None


def json_bool(params: Mapping[str, Any], key: str) -> Optional[bool]:
    value = params.get(key)
    return value if isinstance(value, bool) else None


def json_list(params: Mapping[str, Any], key: str) -> Optional[List[Any]]:
    value = params.get(key)
    return value if isinstance(value, list) else None


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "body"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


def decode_generation_options(params: Mapping[str, Any]) -> GenerationOptions:
    """
    Strictly decode the generation options from a request body.

    Top-level knobs are merged with the protocol's nested `options` object;
    nested values win. Unknown keys are ignored.

    Raises:
        RequestDecodeError: a known option has the wrong type
    """
    merged = dict(params)
    nested = params.get("options")
    if isinstance(nested, dict):
        merged.update(nested)
    elif nested is not None:
        raise RequestDecodeError("options must be a JSON object")

    try:
        return GenerationOptions.model_validate(merged)
    except ValidationError as e:
        raise RequestDecodeError(f"invalid generation options: {_describe_validation_error(e)}") from e


def decode_messages(params: Mapping[str, Any]) -> Tuple[ChatMessage, ...]:
    raw = json_list(params, "messages")
    if raw is None:
        if params.get("messages") is not None:
            raise RequestDecodeError("messages must be an array")
        return ()

    try:
        return tuple(ChatMessage.model_validate(m) for m in raw)
    except ValidationError as e:
        raise RequestDecodeError(f"invalid messages: {_describe_validation_error(e)}") from e


def decode_generation_request(params: Mapping[str, Any], chat: bool = False) -> GenerationRequest:
    """
    Build a GenerationRequest from a parsed body, applying protocol defaults:
    model="default", prompt="", stream=False, messages=().
    """
    model = json_string(params, "model") or "default"
    stream = json_bool(params, "stream")

    return GenerationRequest(
        model=model,
        prompt="" if chat else (json_string(params, "prompt") or ""),
        stream=bool(stream),
        options=decode_generation_options(params),
        messages=decode_messages(params) if chat else (),
    )


# ============================================================================
# Stream Failure Classification
# ============================================================================

@dataclass(frozen=True)
class StreamFailure:
    """Classified failure of an already-started stream.

    The protocol has no out-of-band channel once the body has started, so the
    failure is written as the text of the terminal record.
    """

    kind: str  # "backend_unavailable", "backend_error" or "internal_error"
    message: str

    @classmethod
    def from_exception(cls, exc: Exception) -> "StreamFailure":
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, BackendNotAvailableError):
            return cls("backend_unavailable", message)
        if isinstance(exc, BackendError):
            return cls("backend_error", message)
        return cls("internal_error", message)

    @property
    def content(self) -> str:
        return f"Error: {self.message}"


# ============================================================================
# Metrics
# ============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _nanoseconds(seconds: float) -> int:
    return int(seconds * NANOSECONDS_PER_SECOND)


def final_metrics(
    total_duration: float,
    load_duration: float,
    prompt_eval_duration: float,
    prompt_tokens: int,
    completion_text: str,
) -> Dict[str, int]:
    """Timing and count fields of a final record. Durations are given in seconds."""
    eval_duration = total_duration - load_duration
    if eval_duration < 0:
        logger.debug(f"Clamping negative eval duration ({eval_duration:.6f}s) to zero")
        eval_duration = 0.0

    return {
        "total_duration": _nanoseconds(total_duration),
        "load_duration": _nanoseconds(load_duration),
        "prompt_eval_count": prompt_tokens,
        "prompt_eval_duration": _nanoseconds(prompt_eval_duration),
        "eval_count": approximate_token_count(completion_text),
        "eval_duration": _nanoseconds(eval_duration),
    }


def ndjson_line(record: ResponseRecord) -> bytes:
    return (record.to_json() + "\n").encode("utf-8")


def _json_response(model: BaseModel) -> Response:
    return Response(
        content=model.model_dump_json(exclude_none=True),
        media_type="application/json",
    )


RecordBuilder = Callable[..., ResponseRecord]
StreamOpener = Callable[[], Awaitable[AsyncIterator[str]]]


# ============================================================================
# Adapter
# ============================================================================

class OllamaAdapter:
    """Translates the Ollama protocol onto a GenerationBackend.

    Holds no per-request state; the backend and settings are shared by all
    concurrent requests.
    """

    def __init__(self, backend: GenerationBackend, settings: config.ServerSettings):
        self.backend = backend
        self.settings = settings

    async def ensure_available(self):
        available = await asyncio.to_thread(self.backend.is_available)
        if not available:
            raise BackendNotAvailableError("generation backend is not available")

    # ------------------------------------------------------------------------
    # /api/generate
    # ------------------------------------------------------------------------

    async def generate_completion(self, body: bytes) -> Response:
        start_time = time.perf_counter()

        params = parse_body(body)
        await self.ensure_available()
        request = decode_generation_request(params)

        prompt_tokens = approximate_token_count(request.prompt)
        logger.info(f"generate: model={request.model} stream={request.stream} prompt_tokens~{prompt_tokens}")

        def build(text: str, done: bool, **metrics) -> GenerateResponse:
            return GenerateResponse(
                model=request.model,
                created_at=_timestamp(),
                response=text,
                done=done,
                **metrics,
            )

        if request.stream:
            return self._streaming_response(
                lambda: self.backend.stream_generate(request.model, request.prompt, request.options),
                build,
                start_time,
                prompt_tokens,
            )

        load_start_time = time.perf_counter()
        text = await self.backend.generate(request.model, request.prompt, request.options)
        return self._buffered_response(text, build, start_time, load_start_time, prompt_tokens)

    # ------------------------------------------------------------------------
    # /api/chat
    # ------------------------------------------------------------------------

    async def chat_completion(self, body: bytes) -> Response:
        start_time = time.perf_counter()

        params = parse_body(body)
        await self.ensure_available()
        request = decode_generation_request(params, chat=True)

        prompt_tokens = approximate_token_count(request.prompt_text)
        logger.info(
            f"chat: model={request.model} stream={request.stream} "
            f"messages={len(request.messages)} prompt_tokens~{prompt_tokens}"
        )

        def build(text: str, done: bool, **metrics) -> ChatResponse:
            return ChatResponse(
                model=request.model,
                created_at=_timestamp(),
                message=ChatMessage(role="assistant", content=text),
                done=done,
                **metrics,
            )

        if request.stream:
            return self._streaming_response(
                lambda: self.backend.stream_chat(request.model, request.messages, request.options),
                build,
                start_time,
                prompt_tokens,
            )

        load_start_time = time.perf_counter()
        text = await self.backend.chat(request.model, request.messages, request.options)
        return self._buffered_response(text, build, start_time, load_start_time, prompt_tokens)

    # ------------------------------------------------------------------------
    # Buffered / streamed execution
    # ------------------------------------------------------------------------

    def _buffered_response(
        self,
        text: str,
        build: RecordBuilder,
        start_time: float,
        load_start_time: float,
        prompt_tokens: int,
    ) -> Response:
        now = time.perf_counter()
        load_duration = now - load_start_time
        total_duration = now - start_time

        # No separate prompt evaluation measurement exists for a blocking call
        record = build(
            text,
            True,
            done_reason="stop",
            **final_metrics(total_duration, load_duration, load_duration, prompt_tokens, text),
        )
        return _json_response(record)

    def _streaming_response(
        self,
        open_stream: StreamOpener,
        build: RecordBuilder,
        start_time: float,
        prompt_tokens: int,
    ) -> StreamingResponse:
        return StreamingResponse(
            self.stream_ndjson(open_stream, build, start_time, prompt_tokens),
            media_type=NDJSON_MEDIA_TYPE,
            headers=STREAM_HEADERS,
        )

    async def stream_ndjson(
        self,
        open_stream: StreamOpener,
        build: RecordBuilder,
        start_time: float,
        prompt_tokens: int,
    ) -> AsyncGenerator[bytes, None]:
        """
        Encode a backend fragment stream as NDJSON records.

        Yields one partial record per fragment, in backend order, followed by
        exactly one final record. A backend failure after the body has started
        becomes a final record whose text is the error description.
        """
        completion_text = ""
        try:
            load_start_time = time.perf_counter()
            fragments = await open_stream()
            load_duration = time.perf_counter() - load_start_time

            prompt_eval_start_time = time.perf_counter()

            async for fragment in fragments:
                completion_text += fragment
                yield ndjson_line(build(fragment, False))

            total_duration = time.perf_counter() - start_time
            final = build(
                "",
                True,
                done_reason="stop",
                **final_metrics(
                    total_duration,
                    load_duration,
                    time.perf_counter() - prompt_eval_start_time,
                    prompt_tokens,
                    completion_text,
                ),
            )
        except asyncio.CancelledError:
            logger.info("Client disconnected mid-stream, generation abandoned")
            raise
        except Exception as e:
            failure = StreamFailure.from_exception(e)
            logger.error(f"Streaming error ({failure.kind}): {failure.message}", exc_info=True)
            final = build(failure.content, True)

        yield ndjson_line(final)

    # ------------------------------------------------------------------------
    # Model registry
    # ------------------------------------------------------------------------

    async def list_models(self) -> ListModelsResponse:
        """Wrap every backend model id in a descriptor with placeholder metadata."""
        names = await self.backend.list_models()
        modified_at = _timestamp()

        # Backend order is kept; repeated ids are listed once
        return ListModelsResponse(
            models=[
                ModelDescriptor(
                    name=name,
                    model=name,
                    modified_at=modified_at,
                    size=0,
                    digest="",
                    details=ModelDetails(**config.MODEL_DETAILS),
                )
                for name in dict.fromkeys(names)
            ]
        )

    def show_model(self, name: Optional[str] = None) -> ShowModelResponse:
        """Static description of the backend's generic capability. `name` is ignored."""
        logger.debug(f"show: requested model {name or 'default'!r}")
        return ShowModelResponse(
            modelfile=config.SHOW_MODELFILE,
            parameters="{}",
            template=config.SHOW_TEMPLATE,
            details=ModelDetails(**config.MODEL_DETAILS),
            model_info={"license": config.SHOW_LICENSE},
            capabilities=["completion"],
        )
