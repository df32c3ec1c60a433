"""
LLM Relay Proxy

An OpenAI-compatible gateway that relays chat completion requests, streaming
and unary, to an upstream LLM aggregation API and translates its responses
back into the OpenAI format.
"""

from .gateway import ChatGateway
from .response_coordinator import ResponseCoordinator
from .router import ModelRouter
from .stream_relay import StreamRelay

__all__ = ["ChatGateway", "ResponseCoordinator", "ModelRouter", "StreamRelay"]
