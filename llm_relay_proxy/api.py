"""
FastAPI server for the LLM relay proxy.

Exposes OpenAI-compatible chat completion endpoints backed by the upstream
aggregation API.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .asgi_sink import CoordinatedResponse
from .errors import error_envelope
from .gateway import ChatGateway
from .models import ChatRequest, GatewayConfig, GatewayStats, HealthCheck, ToolCallRequest, new_request_id
from .translator import tool_request_to_chat

logger = logging.getLogger(__name__)

# Global gateway instance
gateway: Optional[ChatGateway] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    global gateway

    # Startup
    logger.info("Starting LLM relay proxy...")

    # Load config from environment variables
    config = GatewayConfig.from_env()
    logger.info(
        f"Relay config: upstream={config.upstream_base_url}, "
        f"timeout={config.request_timeout_ms}ms, "
        f"streaming_timeout={config.timeout_ms_for(True)}ms, "
        f"key_mode={config.api_key_mode.value}, "
        f"bindings={len(config.model_bindings)}"
    )

    gateway = ChatGateway(config=config)
    await gateway.start()

    logger.info("LLM relay proxy started")

    yield

    # Shutdown
    logger.info("Shutting down LLM relay proxy...")

    if gateway:
        await gateway.stop()

    logger.info("LLM relay proxy stopped")


# Create FastAPI app
app = FastAPI(
    title="LLM Relay Proxy",
    description="OpenAI-compatible gateway for an upstream LLM aggregation API",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report invalid request bodies in the OpenAI error shape."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"

    logger.info(f"Rejected invalid request to {request.url.path}: {message}")
    return JSONResponse(
        status_code=400,
        content=error_envelope(
            message,
            error_type="invalid_request_error",
            code="invalid_request",
        ),
    )


def _require_gateway() -> ChatGateway:
    if not gateway:
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return gateway


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _dispatch(gw: ChatGateway, chat_request: ChatRequest, authorization: Optional[str]):
    request_id = new_request_id()

    api_key = gw.resolve_api_key(_bearer_token(authorization))
    if not api_key:
        logger.info(f"Request {request_id} rejected: no API key")
        return JSONResponse(
            status_code=401,
            content=error_envelope(
                "Missing API key. Send 'Authorization: Bearer <key>'.",
                error_type="authentication_error",
                code="missing_api_key",
                request_id=request_id,
            ),
        )

    if not chat_request.model:
        chat_request = chat_request.model_copy(update={"model": gw.config.default_model})

    return CoordinatedResponse(gw, chat_request, request_id, api_key)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "LLM Relay Proxy",
        "version": "1.0.0",
        "status": "running" if gateway and gateway.is_running else "stopped",
        "docs": "/docs",
    }


@app.get("/v1")
async def api_root():
    """API root listing the available endpoints."""
    return {
        "object": "api",
        "endpoints": [
            "/v1/chat/completions",
            "/v1/chat/completions/tools",
            "/v1/models",
        ],
    }


@app.get("/health", response_model=HealthCheck)
async def health_check(
    check_upstream: bool = False,
    authorization: Optional[str] = Header(default=None),
):
    """
    Health check endpoint.

    Args:
        check_upstream: Also probe the upstream status endpoint
    """
    gw = _require_gateway()

    reachable = None
    if check_upstream:
        api_key = gw.resolve_api_key(_bearer_token(authorization))
        reachable = await gw.check_upstream(api_key or "") if api_key else False

    return gw.get_health(upstream_reachable=reachable)


@app.get("/stats", response_model=GatewayStats)
async def get_stats():
    """Get gateway statistics."""
    return _require_gateway().get_stats()


@app.get("/v1/models")
async def list_models():
    """List client-facing model names."""
    gw = _require_gateway()
    return {"object": "list", "data": gw.router.list_models()}


@app.post("/v1/chat/completions")
async def chat_completions(
    request: ChatRequest,
    authorization: Optional[str] = Header(default=None),
):
    """
    Create a chat completion (OpenAI-compatible endpoint).

    Streams SSE when `stream` is true, otherwise returns one JSON body.
    """
    return _dispatch(_require_gateway(), request, authorization)


@app.post("/v1/chat/completions/tools")
async def tool_completions(
    request: ToolCallRequest,
    authorization: Optional[str] = Header(default=None),
):
    """Invoke a tool by name; the call is sent to the model as an XML tool block."""
    gw = _require_gateway()
    chat_request = tool_request_to_chat(request, gw.config.default_model)
    logger.info(f"Tool call {request.tool_name} via model {chat_request.model}")
    return _dispatch(gw, chat_request, authorization)
