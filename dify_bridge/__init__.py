"""dify-bridge: OpenAI chat-completions gateway for Dify apps."""

from .config import load_config
from .types import (
    BridgeConfig,
    BridgeError,
    ChatRequest,
    MemoryMode,
    OutboundChunk,
)

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "BridgeConfig",
    "BridgeError",
    "ChatRequest",
    "MemoryMode",
    "OutboundChunk",
]
