"""
Error taxonomy for the relay proxy and the OpenAI-style envelopes they map to.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for relay proxy errors."""

    status_code: int = 500
    error_type: str = "api_error"
    code: str = "internal_error"

    def envelope(self, request_id: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
        return error_envelope(
            str(self),
            error_type=self.error_type,
            code=self.code,
            request_id=request_id,
            **extra,
        )


class DecodeError(GatewayError):
    """One malformed upstream line. Recovered inside the relay."""

    code = "decode_error"

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class UpstreamStreamError(GatewayError):
    """Transport-level failure talking to the upstream."""

    status_code = 502
    error_type = "upstream_error"
    code = "upstream_error"


class UpstreamHTTPError(UpstreamStreamError):
    """The upstream answered with a non-2xx status."""

    def __init__(self, status: int, text: str):
        super().__init__(f"Upstream HTTP error {status}")
        self.status = status
        self.text = text


class RelayTimeoutError(UpstreamStreamError):
    """The relay-local bound on the upstream call expired."""

    code = "upstream_timeout"


class RelayCancelled(UpstreamStreamError):
    """The relay stopped because its response was cancelled."""

    code = "cancelled"

    def __init__(self, reason: str):
        super().__init__(f"Relay cancelled: {reason}")
        self.reason = reason


class IncompleteStream(UpstreamStreamError):
    """The upstream closed with no sentinel and no output."""

    code = "incomplete_stream"


class RequestTimeoutError(GatewayError):
    """The request timer expired before a terminal response was written."""

    status_code = 408
    code = "timeout"


class FinalizeWriteError(GatewayError):
    """Writing the terminal response failed."""

    code = "finalize_write_error"


def error_envelope(
    message: str,
    *,
    error_type: str = "api_error",
    code: str = "internal_error",
    request_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build an OpenAI-compatible error body."""
    error: Dict[str, Any] = {
        "message": message,
        "type": error_type,
        "code": code,
    }
    if request_id is not None:
        error["request_id"] = request_id
    error.update(extra)
    return {"error": error}


def timeout_envelope(request_id: str, timeout_ms: int, streaming: bool) -> Dict[str, Any]:
    return RequestTimeoutError(f"Request timeout after {timeout_ms}ms").envelope(
        request_id=request_id,
        streaming=streaming,
    )


__all__ = [
    "GatewayError",
    "DecodeError",
    "UpstreamStreamError",
    "UpstreamHTTPError",
    "RelayTimeoutError",
    "RelayCancelled",
    "IncompleteStream",
    "RequestTimeoutError",
    "FinalizeWriteError",
    "error_envelope",
    "timeout_envelope",
]
