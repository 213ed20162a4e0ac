"""
ollama_schemas.py - Request/response models for the Ollama wire protocol

Field names follow the protocol (snake_case). Durations are integer
nanoseconds; timestamps are ISO-8601 strings with fractional seconds and
a UTC offset. Optional fields left as None are omitted on the wire.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

# ============================================================================
# Request Models
# ============================================================================

class ChatMessage(BaseModel):
    """One turn of a conversation. Extra protocol keys (images, tool_calls) are dropped."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def null_content_is_empty(cls, value: Any) -> Any:
        # Replayed assistant tool-call turns carry "content": null
        return "" if value is None else value


class GenerationOptions(BaseModel):
    """Generation tuning knobs, merged from the body and its nested `options` object."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    num_predict: Optional[int] = None
    repeat_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    seed: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    system: Optional[str] = None


# ============================================================================
# Generation Responses
# ============================================================================

class ResponseRecord(BaseModel):
    """Fields shared by every generate/chat record, partial or final."""

    model: str
    created_at: str
    done: bool
    done_reason: Optional[str] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_count: Optional[int] = None
    eval_duration: Optional[int] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class GenerateResponse(ResponseRecord):
    response: str


class ChatResponse(ResponseRecord):
    message: ChatMessage


# ============================================================================
# Model Registry Responses
# ============================================================================

class ModelDetails(BaseModel):
    parent_model: str = ""
    format: str
    family: str
    families: List[str]
    parameter_size: str
    quantization_level: str


class ModelDescriptor(BaseModel):
    name: str
    model: str
    modified_at: str
    size: int = 0
    digest: str = ""
    details: ModelDetails


class ListModelsResponse(BaseModel):
    models: List[ModelDescriptor]


class ShowModelResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    modelfile: str
    parameters: str
    template: str
    details: ModelDetails
    model_info: Dict[str, Any]
    capabilities: List[str]


class VersionResponse(BaseModel):
    version: str
