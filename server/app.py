"""
FastAPI server for the voice call agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Generate TwiML for Twilio webhook
- WS /stream: Twilio Media Streams WebSocket
- WS /ws: Browser call (client-side VAD)
"""

import asyncio
import sys

# uvloop for faster asyncio (Linux/macOS only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from src.voicecall.assistant import Assistant
from src.voicecall.calls.telephony import TelephonyCall
from src.voicecall.config import ConfigError, get_config, init_config
from src.voicecall.conversation import CallLogEntry, Conversation
from src.voicecall.llm import validate_model
from src.voicecall.providers import create_providers


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    browser_calls: int = 0
    telephony_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "browser_calls": self.browser_calls,
            "telephony_calls": self.telephony_calls,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice call server...")
    providers = None

    try:
        config = init_config()
        configure_logging(config.log_level)

        providers = create_providers(config)
        await validate_model(
            providers.http,
            config.openai_api_key,
            config.llm_model,
            base_url=config.openai_base_url,
        )

        app.state.providers = providers
        app.state.browser_assistant = Assistant.from_config(config, providers)
        app.state.telephony_assistant = (
            Assistant.from_config(config, providers, telephony=True)
            if config.telephony_enabled
            else None
        )

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            stream_url=config.stream_url if config.telephony_enabled else None,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    if providers is not None:
        await providers.aclose()


app = FastAPI(
    title="Voice Call Agent",
    description="Turn-based AI voice conversations over browser and Twilio calls",
    version="1.0.0",
    lifespan=lifespan,
)


def _log_call_log(call_id: str):
    def on_end(entries: Tuple[CallLogEntry, ...]) -> None:
        logger.info(
            "Call log",
            call_id=call_id,
            entries=[entry.to_dict() for entry in entries],
        )
    return on_end


def _call_opened(kind: str) -> str:
    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1
    if kind == "telephony":
        metrics.telephony_calls += 1
    else:
        metrics.browser_calls += 1

    call_id = f"{kind}_{int(time.time() * 1000)}"
    logger.info("WebSocket connected", call_id=call_id, active_calls=metrics.active_calls)
    return call_id


def _call_closed(call_id: str) -> None:
    metrics.active_connections -= 1
    metrics.active_calls -= 1
    logger.info("Call finished", call_id=call_id, active_calls=metrics.active_calls)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns TwiML that connects the call to our Media Streams endpoint.
    """
    config = get_config()

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.stream_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", stream_url=config.stream_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/stream")
async def twilio_stream_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One Twilio stream is one telephony call.
    """
    await websocket.accept()

    assistant: Optional[Assistant] = getattr(websocket.app.state, "telephony_assistant", None)
    if assistant is None:
        logger.error("Telephony not configured, rejecting stream")
        await websocket.close(code=1011)
        return

    call_id = _call_opened("telephony")
    call: Optional[TelephonyCall] = None

    try:
        call = TelephonyCall(websocket, websocket.app.state.providers)
        conversation = Conversation(assistant, call, on_end=_log_call_log(call_id))
        await call.start()
        conversation.begin(0)

        while not call.is_closed:
            try:
                message = await websocket.receive_text()
                await call.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                if call.is_closed:
                    break
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    except Exception as e:
        logger.error("WebSocket handler error", call_id=call_id, error=str(e))
        metrics.errors += 1

    finally:
        if call is not None:
            try:
                await call.handle_transport_closed()
                await call.drain()
            except Exception as e:
                logger.error("Error closing call", call_id=call_id, error=str(e))
        _call_closed(call_id)


@app.websocket("/ws")
async def browser_endpoint(websocket: WebSocket) -> None:
    """
    Browser call WebSocket endpoint.

    Binary messages are float32 microphone frames; text messages are the
    EOS / INT control tokens.
    """
    await websocket.accept()

    assistant: Optional[Assistant] = getattr(websocket.app.state, "browser_assistant", None)
    if assistant is None:
        logger.error("Assistant not configured, rejecting browser call")
        await websocket.close(code=1011)
        return

    call_id = _call_opened("browser")
    conversation: Optional[Conversation] = None

    try:
        conversation = assistant.create_conversation(websocket, on_end=_log_call_log(call_id))
        call = conversation.call
        await call.start()
        conversation.begin(get_config().startup_delay_ms)

        while not call.is_closed:
            try:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info("WebSocket disconnected", call_id=call_id)
                    break

                if message.get("bytes") is not None:
                    await call.handle_bytes(message["bytes"])
                elif message.get("text") is not None:
                    await call.handle_text(message["text"])

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                if call.is_closed:
                    break
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    except Exception as e:
        logger.error("WebSocket handler error", call_id=call_id, error=str(e))
        metrics.errors += 1

    finally:
        if conversation is not None:
            try:
                await conversation.call.handle_transport_closed()
                await conversation.call.drain()
            except Exception as e:
                logger.error("Error closing call", call_id=call_id, error=str(e))
        _call_closed(call_id)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
