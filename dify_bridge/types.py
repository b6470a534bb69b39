"""All dataclasses, enums, and error types for dify-bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


# ---------------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str


@dataclass(frozen=True)
class PlainText:
    """Message content sent as a bare string."""
    text: str


@dataclass(frozen=True)
class Parts:
    """Message content sent as an ordered list of text/image parts."""
    items: tuple[TextPart | ImagePart, ...] = ()


MessageContent = Union[PlainText, Parts]


@dataclass
class InboundMessage:
    role: str  # "system", "user", "assistant", "tool"
    content: MessageContent = field(default_factory=lambda: PlainText(""))
    name: str | None = None
    tool_call_id: str | None = None


@dataclass
class ExtractedContent:
    """Flattened view of the turn being answered."""
    query: str = ""
    image_refs: list[str] = field(default_factory=list)


@dataclass
class ChatRequest:
    """Inbound chat-completions request, content resolved once at ingestion."""
    model: str
    messages: list[InboundMessage] = field(default_factory=list)
    stream: bool = False
    user: str | None = None
    inputs: dict = field(default_factory=dict)
    functions: list[dict] | None = None
    tools: list[dict] | None = None
    function_call: str | dict | None = None
    tool_choice: str | dict | None = None


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------

class MemoryMode(str, Enum):
    HISTORICAL = "historical"  # prior turns rendered inline into the query
    EMBEDDED = "embedded"      # conversation id hidden in reply text


@dataclass
class ConversationState:
    mode: MemoryMode = MemoryMode.HISTORICAL
    conversation_id: str | None = None

    @property
    def resumed(self) -> bool:
        return bool(self.conversation_id)


@dataclass
class UploadedFile:
    """Upstream handle for an uploaded image."""
    file_id: str
    name: str = ""
    size: int = 0
    mime_type: str = ""


# ---------------------------------------------------------------------------
# Upstream events
# ---------------------------------------------------------------------------

@dataclass
class MessageDelta:
    text: str
    message_id: str = ""


@dataclass
class MessageEnd:
    conversation_id: str = ""
    history: list[dict] = field(default_factory=list)
    message_id: str = ""
    usage: dict | None = None


@dataclass
class AgentThought:
    id: str = ""
    tool: str | None = None
    thought: str | None = None
    tool_input: str | None = None
    observation: str | None = None


@dataclass
class MessageFile:
    id: str = ""
    file_type: str = ""
    url: str = ""


@dataclass
class UnknownEvent:
    event: str = ""


UpstreamEvent = Union[MessageDelta, MessageEnd, AgentThought, MessageFile, UnknownEvent]


# ---------------------------------------------------------------------------
# Outbound chunks
# ---------------------------------------------------------------------------

@dataclass
class OutboundChunk:
    stream_id: str
    model: str
    created: int
    delta: str | None = None
    finish_reason: str | None = None
    index: int = 0
    role: str | None = None  # set on the first content chunk only

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    def to_dict(self) -> dict:
        delta: dict = {}
        if self.role:
            delta["role"] = self.role
        if self.delta is not None:
            delta["content"] = self.delta
        return {
            "id": self.stream_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": self.index,
                "delta": delta,
                "finish_reason": self.finish_reason,
            }],
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BridgeError(Exception):
    """Base for errors that cross the HTTP boundary as an error envelope."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        self.code = code


class InvalidRequestError(BridgeError):
    status_code = 400
    error_type = "invalid_request_error"


class UpstreamProtocolError(BridgeError):
    status_code = 502
    error_type = "api_error"


class TransportError(BridgeError):
    status_code = 502
    error_type = "stream_error"


class ConfigurationError(BridgeError):
    status_code = 500
    error_type = "configuration_error"


class ModelNotFoundError(ConfigurationError):
    status_code = 404
    error_type = "model_not_found"

    def __init__(self, model: str, known: list[str]) -> None:
        known_list = ", ".join(sorted(known)) or "(none)"
        super().__init__(
            f"Model '{model}' is not supported. Available models: {known_list}",
            code="model_not_found",
        )
        self.model = model
        self.known = list(known)


class AuthenticationError(BridgeError):
    status_code = 401
    error_type = "invalid_request_error"

    def __init__(self, message: str) -> None:
        super().__init__(message, code="invalid_api_key")


class UploadError(Exception):
    """An image reference could not be resolved to an upstream file handle."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason}: {url[:80]}")
        self.url = url
        self.reason = reason


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class UpstreamConfig:
    api_base: str = "http://localhost:8186/v1"
    api_keys: list[str] = field(default_factory=list)
    models: dict[str, str] = field(default_factory=dict)  # model name → app key
    timeout: float = 120.0
    connect_timeout: float = 10.0


@dataclass
class ConversationConfig:
    memory_mode: MemoryMode = MemoryMode.HISTORICAL


@dataclass
class PacingConfig:
    enabled: bool = True
    # (backlog threshold, delay seconds), checked in descending threshold order
    steps: list[tuple[int, float]] = field(default_factory=lambda: [
        (30, 0.001),
        (20, 0.002),
        (10, 0.010),
    ])
    min_delay: float = 0.001
    max_delay: float = 0.020


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5003
    api_keys: list[str] = field(default_factory=list)  # empty = no inbound auth


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class BridgeConfig:
    version: str = "1.0"
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
