"""
Protocol translation between the OpenAI chat format and the upstream's format.

Everything here is pure: no I/O, no shared state.
"""

import html
import json
import logging
import math
import re
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

from .models import (
    ChatRequest,
    ClientCompletion,
    ClientStreamChunk,
    MessageRole,
    ModelBinding,
    ToolCallRequest,
    UpstreamMessage,
    UpstreamPayload,
    UpstreamRecord,
    UsageStats,
    default_tool_config,
)

logger = logging.getLogger(__name__)

# Rough chars-per-token ratio for usage estimates when the upstream omits counts
CHARS_PER_TOKEN = 4

SSE_DONE = b"data: [DONE]\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

TOOL_CALL_PATTERN = re.compile(r'<tool name="([^"]+)">([\s\S]*?)</tool>')
TOOL_PARAM_PATTERN = re.compile(r"<(\w+)[^>]*>([\s\S]*?)</\1>")


def generate_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


# Requests

def to_upstream_payload(
    request: ChatRequest,
    binding: ModelBinding,
    default_temperature: float = 0.7,
) -> UpstreamPayload:
    """
    Translate a validated chat request into the upstream payload.

    System messages go to `system_msg`; every other message keeps its order
    in `history`. Parameter ranges were validated with the request.
    """
    system_msg = ""
    history = []
    last_user_query = ""

    for message in request.messages:
        if message.role == MessageRole.SYSTEM:
            if not system_msg:
                system_msg = message.content
            continue

        history.append(UpstreamMessage(
            role=message.role.value,
            content={
                "text": message.content,
                "image_data": [image.model_dump() for image in message.images],
            },
        ))
        if message.role == MessageRole.USER:
            last_user_query = message.content

    return UpstreamPayload(
        llm=binding.backend_family,
        llm_model=binding.backend_model_id,
        history=history,
        system_msg=system_msg,
        last_user_query=last_user_query,
        temperature=request.temperature if request.temperature is not None else default_temperature,
        max_tokens=request.max_tokens,
        stream=request.stream,
        image_analyze=request.has_images,
        enable_tool=request.has_tools,
        tools=configure_tools(request),
    )


def configure_tools(request: ChatRequest) -> Dict[str, Any]:
    """
    Build the upstream tool block for a request.

    Declared `tools` switch on internet and document search; declared
    `functions` switch on code execution. Everything else stays off.
    """
    config = default_tool_config()
    tool_list = config["tool_list"]

    if request.tools:
        tool_list["internet_search"] = True
        tool_list["search_doc"] = True
    if request.functions:
        tool_list["python_code_execution_tool"] = True

    return config


def tool_call_to_xml(tool_name: str, parameters: Dict[str, Any]) -> str:
    """Render a tool invocation in the XML form the upstream models understand."""
    lines = [f'<tool name="{escape_xml(tool_name)}">']

    for key, value in parameters.items():
        if isinstance(value, dict):
            lines.append(f"  <{key}>")
            for sub_key, sub_value in value.items():
                lines.append(f"    <{sub_key}>{escape_xml(str(sub_value))}</{sub_key}>")
            lines.append(f"  </{key}>")
        elif isinstance(value, list):
            lines.append(f"  <{key}>")
            for index, item in enumerate(value):
                lines.append(f'    <item index="{index}">{escape_xml(str(item))}</item>')
            lines.append(f"  </{key}>")
        else:
            lines.append(f"  <{key}>{escape_xml(str(value))}</{key}>")

    lines.append("</tool>")
    return "\n".join(lines)


def tool_request_to_chat(tool_request: ToolCallRequest, default_model: str) -> ChatRequest:
    """Synthesize the chat request that carries a tool invocation."""
    return ChatRequest(
        model=tool_request.model or default_model,
        messages=[{
            "role": "user",
            "content": tool_call_to_xml(tool_request.tool_name, tool_request.parameters),
        }],
        stream=False,
        temperature=0.1,
        max_tokens=4000,
    )


def escape_xml(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#039;")
    )


# Responses

def extract_tool_calls(content: str) -> List[Dict[str, Any]]:
    """Find `<tool name="...">...</tool>` blocks and convert them to OpenAI tool calls."""
    tool_calls = []

    for match in TOOL_CALL_PATTERN.finditer(content or ""):
        name, body = html.unescape(match.group(1)), match.group(2)
        parameters: Dict[str, Any] = {}
        for param in TOOL_PARAM_PATTERN.finditer(body):
            text = html.unescape(param.group(2).strip())
            try:
                parameters[param.group(1)] = json.loads(text)
            except ValueError:
                parameters[param.group(1)] = text

        tool_calls.append({
            "id": f"call_{uuid.uuid4().hex[:24]}",
            "type": "function",
            "function": {"name": name, "arguments": json.dumps(parameters)},
        })

    if tool_calls:
        logger.debug(f"Extracted {len(tool_calls)} tool call(s) from upstream output")

    return tool_calls


def from_upstream_unary(response: Dict[str, Any], model: str) -> ClientCompletion:
    """Wrap a unary upstream response in a chat.completion envelope."""
    output = response.get("output") or ""
    usage = UsageStats.from_counts(
        response.get("promptTokens"),
        response.get("completionTokens"),
    )

    message: Dict[str, Any] = {"role": "assistant", "content": output}
    finish_reason = "stop"

    tool_calls = extract_tool_calls(output)
    if tool_calls:
        message["tool_calls"] = tool_calls
        finish_reason = "tool_calls"

    return ClientCompletion(
        id=generate_completion_id(),
        model=model,
        choices=[{"index": 0, "message": message, "finish_reason": finish_reason}],
        usage=usage.to_openai(),
    )


def to_client_chunk(
    record: UpstreamRecord,
    sequence_index: int,
    completion_id: str,
    model: str,
) -> Optional[ClientStreamChunk]:
    """
    Translate one upstream record into a streaming delta.

    Returns None for the sentinel and for empty heartbeat records.
    """
    if record.output is None or record.output == "":
        return None

    delta: Dict[str, Any] = {"content": record.output}
    if sequence_index == 0:
        delta = {"role": "assistant", **delta}

    return ClientStreamChunk(
        id=completion_id,
        model=model,
        choices=[{"index": 0, "delta": delta, "finish_reason": None}],
        sequence_index=sequence_index,
    )


def final_chunk(completion_id: str, model: str, usage: UsageStats) -> ClientStreamChunk:
    """The closing chunk of a stream, carrying finish_reason and usage."""
    return ClientStreamChunk(
        id=completion_id,
        model=model,
        choices=[{"index": 0, "delta": {}, "finish_reason": "stop"}],
        usage=usage.to_openai(),
    )


def format_sse(event: Union[BaseModel, Dict[str, Any]]) -> bytes:
    """Frame one event as `data: <json>\\n\\n`."""
    if isinstance(event, BaseModel):
        event = event.model_dump(mode="json")
        # Usage is only sent on the final chunk
        if event.get("usage") is None:
            event.pop("usage", None)
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


# Usage estimates

def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(output: str, prompt_text: str = "") -> UsageStats:
    """
    Approximate usage from text length.

    This is a heuristic (about four characters per token), not a token count;
    the result is flagged `estimated=True`.
    """
    prompt = estimate_tokens(prompt_text)
    completion = estimate_tokens(output)
    return UsageStats(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
        estimated=True,
    )
