"""Build the upstream ``chat-messages`` request from an inbound chat request.

Dify has no function-calling concept, so system instructions, function and
tool descriptors and forced-call directives are folded into the query text
ahead of the user's question, always in the same order.
"""

from __future__ import annotations

import json
import logging

from ..types import ChatRequest, ConversationState, InvalidRequestError, UploadedFile
from .content_extractor import parse_messages

logger = logging.getLogger(__name__)

DEFAULT_USER = "default_user"
FILE_TRANSFER_METHOD = "local_file"

_SYSTEM_LABEL = "System instructions: "
_FUNCTIONS_LABEL = "Available functions:"
_TOOLS_LABEL = "Available tools:"
_FUNCTION_CALL_LABEL = "Forced function call: "
_TOOL_CHOICE_LABEL = "Tool choice: "
_QUERY_LABEL = "User question: "


def parse_chat_request(raw: object) -> ChatRequest:
    """Validate an inbound chat-completions body and resolve its content."""
    if not isinstance(raw, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    model = raw.get("model")
    if not isinstance(model, str) or not model:
        raise InvalidRequestError("'model' is required")
    messages = raw.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("'messages' must be a non-empty list")
    if not all(isinstance(m, dict) for m in messages):
        raise InvalidRequestError("Each message must be an object")
    stream = raw.get("stream")
    if stream is not None and not isinstance(stream, bool):
        raise InvalidRequestError("'stream' must be a boolean")
    inputs = raw.get("inputs") or {}
    if not isinstance(inputs, dict):
        raise InvalidRequestError("'inputs' must be an object")

    return ChatRequest(
        model=model,
        messages=parse_messages(messages),
        stream=bool(stream),
        user=raw.get("user") or None,
        inputs=inputs,
        functions=raw.get("functions") or None,
        tools=raw.get("tools") or None,
        function_call=raw.get("function_call"),
        tool_choice=raw.get("tool_choice"),
    )


def _compact_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _fenced_json(label: str, value: object) -> str:
    return f"{label}\n```json\n{_compact_json(value)}\n```"


def build_instruction_block(
    request: ChatRequest,
    query: str,
    system: str = "",
) -> str:
    """Fold system prompt and function/tool directives into the query."""
    sections: list[str] = []
    if system:
        sections.append(f"{_SYSTEM_LABEL}{system}")
    if request.functions:
        sections.append(_fenced_json(_FUNCTIONS_LABEL, request.functions))
    if request.tools:
        sections.append(_fenced_json(_TOOLS_LABEL, request.tools))
    if request.function_call is not None:
        sections.append(f"{_FUNCTION_CALL_LABEL}{_compact_json(request.function_call)}")
    if request.tool_choice is not None:
        sections.append(f"{_TOOL_CHOICE_LABEL}{_compact_json(request.tool_choice)}")

    if not sections:
        return query
    sections.append(f"{_QUERY_LABEL}{query}")
    return "\n\n".join(sections)


def file_references(files: list[UploadedFile]) -> list[dict]:
    return [
        {
            "type": "image",
            "transfer_method": FILE_TRANSFER_METHOD,
            "upload_file_id": f.file_id,
        }
        for f in files
    ]


def build_upstream_request(
    request: ChatRequest,
    query: str,
    state: ConversationState,
    uploaded_files: list[UploadedFile] | None = None,
    *,
    system: str = "",
) -> dict:
    """Upstream ``POST /chat-messages`` body.

    *system* is the system prompt to fold in; pass an empty string when the
    upstream has already seen it (resumed conversation or history block).
    """
    body: dict = {
        "inputs": dict(request.inputs or {}),
        "query": build_instruction_block(request, query, system),
        "response_mode": "streaming" if request.stream else "blocking",
        "user": request.user or DEFAULT_USER,
        "auto_generate_name": True,
    }
    if state.conversation_id:
        body["conversation_id"] = state.conversation_id
    if uploaded_files:
        body["files"] = file_references(uploaded_files)

    logger.info(
        "Upstream request: mode=%s conversation=%s files=%d query_chars=%d",
        body["response_mode"],
        state.conversation_id or "new",
        len(uploaded_files or []),
        len(body["query"]),
    )
    return body
