"""
test_adapter.py - Unit tests for the Ollama protocol adapter

Tests:
- Token estimation
- Parameter decoding (defaults, loose accessors, strict options/messages)
- NDJSON stream encoding (ordering, termination, error records)
- Stream failure classification
- Model registry
"""

import asyncio
import dataclasses
import json

import pytest

from backend_client import BackendError, BackendNotAvailableError
from conftest import FakeBackend
from ollama_adapter import (
    GenerationRequest,
    OllamaAdapter,
    RequestDecodeError,
    StreamFailure,
    approximate_token_count,
    decode_generation_options,
    decode_generation_request,
    final_metrics,
    json_bool,
    json_list,
    json_string,
    parse_body,
)
from ollama_schemas import GenerateResponse


# ============================================================================
# Token Estimation
# ============================================================================

def test_token_estimate_empty_text():
    assert approximate_token_count("") == 0


@pytest.mark.parametrize("text,expected", [
    ("a", 1),
    ("abc", 1),
    ("abcd", 1),
    ("abcdefgh", 2),
    ("x" * 401, 100),
])
def test_token_estimate_non_empty_text(text, expected):
    assert approximate_token_count(text) == expected


# ============================================================================
# Parameter Decoding
# ============================================================================

def test_parse_body_rejects_non_object():
    with pytest.raises(RequestDecodeError):
        parse_body(b"[1, 2, 3]")


def test_parse_body_rejects_empty_body():
    with pytest.raises(RequestDecodeError):
        parse_body(b"")


def test_parse_body_rejects_invalid_utf8():
    with pytest.raises(RequestDecodeError):
        parse_body(b"\xff\xfe{")


def test_loose_accessors_return_none_on_type_mismatch():
    params = {"s": "text", "b": True, "l": [1], "n": 3}

    assert json_string(params, "s") == "text"
    assert json_string(params, "n") is None
    assert json_bool(params, "b") is True
    assert json_bool(params, "s") is None
    assert json_list(params, "l") == [1]
    assert json_list(params, "missing") is None


def test_decode_request_defaults():
    request = decode_generation_request({})

    assert request.model == "default"
    assert request.prompt == ""
    assert request.stream is False
    assert request.messages == ()


def test_decode_chat_request_defaults():
    request = decode_generation_request({}, chat=True)

    assert request.messages == ()
    assert request.prompt_text == ""


def test_decode_request_is_read_only():
    request = decode_generation_request({"model": "m1", "prompt": "hello"})

    with pytest.raises(dataclasses.FrozenInstanceError):
        request.model = "other"


def test_decode_chat_messages_and_prompt_text():
    request = decode_generation_request(
        {"messages": [{"role": "user", "content": "one"}, {"role": "assistant", "content": "two"}]},
        chat=True,
    )

    assert [m.role for m in request.messages] == ["user", "assistant"]
    assert request.prompt_text == "one\ntwo"


def test_decode_message_without_content_defaults_to_empty():
    request = decode_generation_request({"messages": [{"role": "user"}]}, chat=True)

    assert request.messages[0].content == ""


def test_decode_message_with_null_content_defaults_to_empty():
    request = decode_generation_request(
        {"messages": [{"role": "assistant", "content": None, "tool_calls": []}, {"role": "user", "content": "ok"}]},
        chat=True,
    )

    assert [m.content for m in request.messages] == ["", "ok"]
    assert request.prompt_text == "\nok"


def test_decode_options_nested_wins_and_unknown_keys_ignored():
    options = decode_generation_options({
        "temperature": 0.1,
        "top_k": 10,
        "keep_alive": "5m",
        "options": {"temperature": 0.7, "stop": ["\n"], "mirostat": 2},
    })

    assert options.temperature == 0.7
    assert options.top_k == 10
    assert options.stop == ["\n"]


def test_decode_options_rejects_non_object_options():
    with pytest.raises(RequestDecodeError):
        decode_generation_options({"options": "fast"})


def test_decode_options_rejects_wrong_type():
    with pytest.raises(RequestDecodeError) as excinfo:
        decode_generation_options({"options": {"top_k": "many"}})

    assert "top_k" in str(excinfo.value)


# ============================================================================
# Metrics
# ============================================================================

def test_final_metrics_in_nanoseconds():
    metrics = final_metrics(2.0, 0.5, 0.25, prompt_tokens=3, completion_text="abcdefgh")

    assert metrics == {
        "total_duration": 2_000_000_000,
        "load_duration": 500_000_000,
        "prompt_eval_count": 3,
        "prompt_eval_duration": 250_000_000,
        "eval_count": 2,
        "eval_duration": 1_500_000_000,
    }


def test_final_metrics_clamps_negative_eval_duration():
    metrics = final_metrics(0.1, 0.3, 0.0, prompt_tokens=0, completion_text="")

    assert metrics["eval_duration"] == 0
    assert metrics["eval_count"] == 0


# ============================================================================
# Stream Encoding
# ============================================================================

def _builder(text, done, **metrics):
    return GenerateResponse(model="m1", created_at="2026-01-01T00:00:00.000000+00:00",
                            response=text, done=done, **metrics)


async def _collect(adapter, backend, prompt_tokens=1):
    lines = []
    async for line in adapter.stream_ndjson(
        lambda: backend.stream_generate("m1", "hi", None), _builder, 0.0, prompt_tokens
    ):
        lines.append(line)
    return lines


@pytest.mark.asyncio
async def test_stream_preserves_order_and_terminates(settings):
    backend = FakeBackend(fragments=("The", " capital", " of", " France"))
    adapter = OllamaAdapter(backend, settings)

    lines = await _collect(adapter, backend)
    records = [json.loads(line) for line in lines]

    assert all(line.endswith(b"\n") and line.count(b"\n") == 1 for line in lines)
    assert [r["done"] for r in records] == [False] * 4 + [True]
    assert "".join(r["response"] for r in records[:-1]) == "The capital of France"
    assert records[-1]["eval_count"] == approximate_token_count("The capital of France")


@pytest.mark.asyncio
async def test_stream_error_is_single_terminal_record(settings):
    backend = FakeBackend(fragments=("x", "y"), fail_after=0, error=BackendError("refused"))
    adapter = OllamaAdapter(backend, settings)

    records = [json.loads(line) for line in await _collect(adapter, backend)]

    assert len(records) == 1
    assert records[0] == {
        "model": "m1",
        "created_at": "2026-01-01T00:00:00.000000+00:00",
        "response": "Error: refused",
        "done": True,
    }


@pytest.mark.asyncio
async def test_stream_error_after_last_fragment(settings):
    backend = FakeBackend(fragments=("x", "y"), fail_after=2)
    adapter = OllamaAdapter(backend, settings)

    records = [json.loads(line) for line in await _collect(adapter, backend)]

    assert [r["done"] for r in records] == [False, False, True]
    assert records[-1]["response"] == "Error: backend exploded"


@pytest.mark.asyncio
async def test_client_disconnect_abandons_stream_without_terminal_record(settings):
    closed = []
    first_line_sent = asyncio.Event()

    async def stalled_fragments():
        try:
            yield "a"
            await asyncio.Event().wait()
            yield "never"
        finally:
            closed.append(True)

    async def open_stream():
        return stalled_fragments()

    adapter = OllamaAdapter(FakeBackend(), settings)
    lines = []

    async def consume():
        async for line in adapter.stream_ndjson(open_stream, _builder, 0.0, 1):
            lines.append(line)
            first_line_sent.set()

    task = asyncio.create_task(consume())
    await first_line_sent.wait()
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    records = [json.loads(line) for line in lines]
    assert records == [{"model": "m1", "created_at": "2026-01-01T00:00:00.000000+00:00",
                        "response": "a", "done": False}]
    assert closed == [True]


# ============================================================================
# Stream Failure Classification
# ============================================================================

def test_stream_failure_classification():
    assert StreamFailure.from_exception(BackendNotAvailableError("down")).kind == "backend_unavailable"
    assert StreamFailure.from_exception(BackendError("500")).kind == "backend_error"
    assert StreamFailure.from_exception(KeyError("x")).kind == "internal_error"


def test_stream_failure_content_uses_class_name_when_message_empty():
    failure = StreamFailure.from_exception(RuntimeError())

    assert failure.content == "Error: RuntimeError"


# ============================================================================
# Model Registry
# ============================================================================

@pytest.mark.asyncio
async def test_list_models_keeps_order_and_lists_each_id_once(settings):
    backend = FakeBackend(models=("b", "a", "b", "c"))
    adapter = OllamaAdapter(backend, settings)

    listing = await adapter.list_models()

    assert [m.name for m in listing.models] == ["b", "a", "c"]
    assert all(m.size == 0 and m.digest == "" for m in listing.models)
    assert len({m.modified_at for m in listing.models}) == 1


def test_show_model_is_static(settings):
    adapter = OllamaAdapter(FakeBackend(), settings)

    assert adapter.show_model("m1") == adapter.show_model(None)
    assert adapter.show_model().capabilities == ["completion"]


@pytest.mark.asyncio
async def test_ensure_available_raises_when_backend_down(settings):
    adapter = OllamaAdapter(FakeBackend(available=False), settings)

    with pytest.raises(BackendNotAvailableError):
        await adapter.ensure_available()


def test_generation_request_prompt_text_for_completion():
    request = decode_generation_request({"prompt": "hello"})

    assert isinstance(request, GenerationRequest)
    assert request.prompt_text == "hello"
