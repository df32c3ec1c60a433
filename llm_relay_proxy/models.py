"""
Data models for the LLM relay proxy.
"""

import json
import os
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MessageRole(str, Enum):
    """Roles accepted in a client chat request."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class CancellationReason(str, Enum):
    """Why a coordinated response was cancelled."""
    REQUEST_TIMEOUT = "request_timeout"
    REQUEST_COMPLETED = "request_completed"
    CLIENT_DISCONNECTED = "client_disconnected"
    UPSTREAM_ERROR = "upstream_error"


class ResponsePhase(str, Enum):
    """Lifecycle of one coordinated client response."""
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"    # Clean completion
    TIMED_OUT = "timed_out"    # Request timer fired first
    CANCELLED = "cancelled"    # Client went away (or explicit cancel)
    ERRORED = "errored"        # Upstream or internal failure


TERMINAL_PHASES = frozenset({
    ResponsePhase.COMPLETED,
    ResponsePhase.TIMED_OUT,
    ResponsePhase.CANCELLED,
    ResponsePhase.ERRORED,
})


class ApiKeyMode(str, Enum):
    """How the upstream API key is chosen."""
    PASSTHROUGH = "passthrough"  # Use the caller's bearer token
    OVERRIDE = "override"        # Always use the configured key


# Client request models

class ImageContent(BaseModel):
    """An image attached to a message, in the upstream's `image_data` shape."""
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    details: str = "low"


class ChatMessage(BaseModel):
    """One message of a client chat request."""
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str = ""
    images: List[ImageContent] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def split_content_parts(cls, data: Any) -> Any:
        # OpenAI clients may send [{"type": "text", ...}, {"type": "image_url", ...}]
        if not isinstance(data, dict) or not isinstance(data.get("content"), list):
            return data

        texts = []
        images = list(data.get("images") or [])
        for part in data["content"]:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text":
                texts.append(part.get("text", ""))
            elif part.get("type") == "image_url":
                image_url = part.get("image_url")
                if isinstance(image_url, str):
                    image_url = {"url": image_url}
                image_url = image_url or {}
                images.append({"url": image_url.get("url"), "details": image_url.get("detail") or "low"})

        return {**data, "content": " ".join(texts), "images": images}

    @model_validator(mode="after")
    def check_not_empty(self) -> "ChatMessage":
        if not self.content and not self.images:
            raise ValueError("message content must not be empty")
        return self


class ChatRequest(BaseModel):
    """A validated OpenAI-style chat completion request."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    model: Optional[str] = None  # Configured default model when omitted
    messages: List[ChatMessage] = Field(..., min_length=1)

    # Optional parameters
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32768)
    stream: bool = False

    # Function definitions; only their presence matters upstream
    tools: Optional[List[Dict[str, Any]]] = None
    functions: Optional[List[Dict[str, Any]]] = None

    @property
    def has_images(self) -> bool:
        return any(m.images for m in self.messages)

    @property
    def has_tools(self) -> bool:
        return bool(self.tools) or bool(self.functions)

    def prompt_text(self) -> str:
        """All message text joined, used for usage estimates."""
        return "\n".join(m.content for m in self.messages)


class ToolCallRequest(BaseModel):
    """Direct tool invocation, turned into a chat request."""
    tool_name: str = Field(..., min_length=1)
    parameters: Dict[str, Any]
    model: Optional[str] = None


# Upstream models

class ModelBinding(BaseModel):
    """Maps a client-facing model name to the upstream's identifiers."""
    model_config = ConfigDict(frozen=True)

    provider: str
    backend_family: str      # Sent as "llm"
    backend_model_id: str    # Sent as "llm_model"


class UpstreamMessage(BaseModel):
    """A history entry in the upstream's message format."""
    role: str
    content: Dict[str, Any]


def default_tool_config() -> Dict[str, Any]:
    """Upstream tool block with every tool switched off."""
    return {
        "tool_list": {
            "image_generation": False,
            "image_generation1": False,
            "image_editing": False,
            "search_doc": False,
            "internet_search": False,
            "python_code_execution_tool": False,
            "csv_analysis": False,
        },
        "number_of_context": 3,
        "pdf_references": [""],
        "embedding_model": ["text-embedding-3-large"],
        "image_generation_parameters": {},
    }


class UpstreamPayload(BaseModel):
    """Request body sent to the upstream /chat and /streamChat endpoints."""
    llm: str
    llm_model: str
    history: List[UpstreamMessage] = Field(default_factory=list)
    system_msg: str = ""
    last_user_query: str = ""
    temperature: float
    max_tokens: Optional[int] = None
    stream: bool = False

    image_analyze: bool = False
    enable_tool: bool = False
    tools: Dict[str, Any] = Field(default_factory=default_tool_config)


class UpstreamRecord(BaseModel):
    """One decoded line of the upstream's incremental protocol."""
    output: Optional[str] = ""  # None is the end-of-stream sentinel
    prompt_tokens: Optional[int] = Field(default=None, alias="promptTokens")
    completion_tokens: Optional[int] = Field(default=None, alias="completionTokens")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_sentinel(self) -> bool:
        return self.output is None

    @property
    def has_usage(self) -> bool:
        return self.prompt_tokens is not None or self.completion_tokens is not None


class UsageStats(BaseModel):
    """Token usage. `estimated` is True when derived from text length."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def from_counts(
        cls,
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
    ) -> "UsageStats":
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )

    def to_openai(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


class RelayResult(BaseModel):
    """Outcome of one successful streaming relay."""
    aggregated_output: str = ""
    usage: UsageStats
    chunk_count: int = 0
    discarded_lines: int = 0
    terminated_by_sentinel: bool = True


# Client response models

class ClientStreamChunk(BaseModel):
    """An OpenAI chat.completion.chunk."""
    id: str
    object: str = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[Dict[str, Any]]
    usage: Optional[Dict[str, int]] = None

    # Ordering diagnostics only; never serialized to the client
    sequence_index: Optional[int] = Field(default=None, exclude=True)


class ClientCompletion(BaseModel):
    """An OpenAI chat.completion."""
    id: str
    object: str = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[Dict[str, Any]]
    usage: Dict[str, int]


# Configuration

DEFAULT_MODEL_BINDINGS: Dict[str, Dict[str, str]] = {
    "gpt-4.1-mini-2025-04-14": {"provider": "OpenAI", "backend_family": "OpenAI", "backend_model_id": "gpt-4.1-mini-2025-04-14"},
    "gpt-4.1-2025-04-14": {"provider": "OpenAI", "backend_family": "OpenAI", "backend_model_id": "gpt-4.1-2025-04-14"},
    "gpt-4o-mini": {"provider": "OpenAI", "backend_family": "OpenAI", "backend_model_id": "gpt-4o-mini"},
    "gpt-4o": {"provider": "OpenAI", "backend_family": "OpenAI", "backend_model_id": "gpt-4.1-2025-04-14"},
    "gpt-3.5-turbo": {"provider": "OpenAI", "backend_family": "OpenAI", "backend_model_id": "gpt-4.1-mini-2025-04-14"},
    "claude-3-5-sonnet-20241022": {"provider": "ClaudeAI", "backend_family": "ClaudeAI", "backend_model_id": "claude-3-7-sonnet-latest"},
    "claude-3-opus-20240229": {"provider": "ClaudeAI", "backend_family": "ClaudeAI", "backend_model_id": "claude-opus-4-20250514"},
    "claude-sonnet-4-20250514": {"provider": "ClaudeAI", "backend_family": "ClaudeAI", "backend_model_id": "claude-sonnet-4-20250514"},
    "gemini-1.5-pro": {"provider": "GeminiAI", "backend_family": "GeminiAI", "backend_model_id": "gemini-2.5-pro"},
    "gemini-1.5-flash": {"provider": "GeminiAI", "backend_family": "GeminiAI", "backend_model_id": "gemini-2.5-flash"},
    "grok-3-beta": {"provider": "OpenRouterAI", "backend_family": "OpenRouterAI", "backend_model_id": "x-ai/grok-3-beta"},
    "grok-3-mini-beta": {"provider": "OpenRouterAI", "backend_family": "OpenRouterAI", "backend_model_id": "x-ai/grok-3-mini-beta"},
    "perplexity-sonar-pro": {"provider": "OpenRouterAI", "backend_family": "OpenRouterAI", "backend_model_id": "perplexity/sonar-pro"},
    "deepseek-chat": {"provider": "OpenRouterAI", "backend_family": "OpenRouterAI", "backend_model_id": "deepseek/deepseek-chat"},
    "deepseek-r1": {"provider": "OpenRouterAI", "backend_family": "OpenRouterAI", "backend_model_id": "deepseek/deepseek-r1"},
}


def _default_bindings() -> Dict[str, ModelBinding]:
    return {name: ModelBinding(**b) for name, b in DEFAULT_MODEL_BINDINGS.items()}


class GatewayConfig(BaseModel):
    """Configuration for the relay proxy."""

    # Upstream
    upstream_base_url: str = "https://qolaba-server-b2b.up.railway.app/api/v1/studio"

    # Timeouts
    request_timeout_ms: int = 120_000          # Non-streaming request timeout
    streaming_timeout_multiplier: float = 4.0  # Streaming timeout = request timeout * this
    min_streaming_timeout_ms: int = 120_000    # ...but never below this
    relay_timeout_ratio: float = 0.9           # Upstream/relay bound as share of the request timeout

    # Defaults applied to requests
    default_model: str = "gpt-4.1-mini-2025-04-14"
    default_temperature: float = 0.7

    # Upstream credentials
    api_key_mode: ApiKeyMode = ApiKeyMode.PASSTHROUGH
    override_api_key: Optional[str] = None

    # Model bindings
    model_bindings: Dict[str, ModelBinding] = Field(default_factory=_default_bindings)
    default_binding: ModelBinding = Field(default_factory=lambda: ModelBinding(
        provider="OpenAI",
        backend_family="OpenAI",
        backend_model_id="gpt-4.1-mini-2025-04-14",
    ))

    @field_validator("request_timeout_ms", "min_streaming_timeout_ms")
    @classmethod
    def positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("streaming_timeout_multiplier")
    @classmethod
    def positive_multiplier(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("streaming_timeout_multiplier must be positive")
        return value

    @field_validator("relay_timeout_ratio")
    @classmethod
    def ratio_in_range(cls, value: float) -> float:
        if not 0 < value < 1:
            raise ValueError("relay_timeout_ratio must be between 0 and 1 (exclusive)")
        return value

    @model_validator(mode="after")
    def override_key_required(self) -> "GatewayConfig":
        if self.api_key_mode == ApiKeyMode.OVERRIDE and not self.override_api_key:
            raise ValueError("OVERRIDE_API_KEY is required when API_KEY_MODE is 'override'")
        return self

    def timeout_ms_for(self, streaming: bool) -> int:
        """Request timeout sized by request shape."""
        if not streaming:
            return self.request_timeout_ms
        return max(
            int(self.request_timeout_ms * self.streaming_timeout_multiplier),
            self.min_streaming_timeout_ms,
        )

    def relay_timeout_seconds_for(self, streaming: bool) -> float:
        """Upstream-scoped bound, always shorter than the request timeout."""
        return self.timeout_ms_for(streaming) * self.relay_timeout_ratio / 1000.0

    @staticmethod
    def load_bindings(path: str) -> Dict[str, ModelBinding]:
        """Load a binding table from a JSON file of {model: {provider, backend_family, backend_model_id}}."""
        with open(Path(path)) as f:
            data = json.load(f)
        return {name: ModelBinding(**binding) for name, binding in data.items()}

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Load configuration from environment variables."""
        values: Dict[str, Any] = {
            "upstream_base_url": os.getenv("UPSTREAM_BASE_URL", cls.model_fields["upstream_base_url"].default),
            "request_timeout_ms": int(os.getenv("REQUEST_TIMEOUT_MS", "120000")),
            "streaming_timeout_multiplier": float(os.getenv("STREAMING_TIMEOUT_MULTIPLIER", "4")),
            "min_streaming_timeout_ms": int(os.getenv("MIN_STREAMING_TIMEOUT_MS", "120000")),
            "relay_timeout_ratio": float(os.getenv("RELAY_TIMEOUT_RATIO", "0.9")),
            "default_model": os.getenv("DEFAULT_MODEL", "gpt-4.1-mini-2025-04-14"),
            "default_temperature": float(os.getenv("DEFAULT_TEMPERATURE", "0.7")),
            "api_key_mode": os.getenv("API_KEY_MODE", "passthrough"),
            "override_api_key": os.getenv("OVERRIDE_API_KEY") or None,
        }

        bindings_file = os.getenv("MODEL_BINDINGS_FILE")
        if bindings_file:
            bindings = cls.load_bindings(bindings_file)
            default = bindings.pop("default", None)
            values["model_bindings"] = bindings
            if default:
                values["default_binding"] = default

        return cls(**values)


# Statistics

class GatewayStats(BaseModel):
    """Gateway statistics."""
    total_requests: int = 0
    streaming_requests: int = 0
    active_requests: int = 0

    # Outcomes
    completed_requests: int = 0
    failed_requests: int = 0
    timed_out_requests: int = 0
    cancelled_requests: int = 0

    # Relay diagnostics
    fallback_bindings: int = 0
    discarded_lines: int = 0
    estimated_usage_responses: int = 0


class HealthCheck(BaseModel):
    """Gateway health check."""
    status: str  # "healthy", "stopped"
    uptime_seconds: float
    active_requests: int
    upstream_base_url: str
    upstream_reachable: Optional[bool] = None


def new_request_id() -> str:
    return str(uuid.uuid4())
