"""
Live Transcription Microservice FastAPI Application

Real-time speech-to-text streaming over AssemblyAI or Gemini Live.

Endpoints:
    POST   /api/v1/sessions                  - Start a session
    GET    /api/v1/sessions                  - List sessions
    POST   /api/v1/sessions/{id}/chunks      - Push one audio chunk
    DELETE /api/v1/sessions/{id}             - Stop a session
    WebSocket /api/v1/transcribe/stream      - Stream audio, receive session events
    GET /health                              - Health check
    GET /metrics                             - Prometheus metrics
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from shared.events import VoiceEvent
from shared.observability import get_metrics_response, setup_metrics
from shared.redis_client import close_redis_client, get_event_broker, ping_redis

from .config import TranscriptionConfig
from .errors import ProviderUnavailableError, ServiceDisabledError
from .models import AudioChunk
from .session_registry import ALL_EVENTS, SERVICE_NAME, TranscriptionSessionRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


# Pydantic Models
class StartSessionRequest(BaseModel):
    session_id: Optional[str] = Field(None, description="Session id (allocated when absent)")
    source_name: Optional[str] = Field(None, description="Human-readable capture source")
    source_type: str = Field("mic", description="'mic' or 'system'")
    platform: Optional[str] = Field(None, description="Client platform")
    streaming_config: Optional[Dict[str, Any]] = Field(None, description="Per-session config overrides")


class StartSessionResponse(BaseModel):
    session_id: str


class ChunkRequest(BaseModel):
    sequence: int = Field(..., ge=0, description="Producer-assigned, non-decreasing")
    data: str = Field(..., description="Base64 PCM16 mono audio")
    mime_type: Optional[str] = Field(None, description="Defaults to audio/pcm;rate=16000")
    capture_timestamp: Optional[float] = Field(None, description="Capture time (epoch seconds)")


class ChunkResponse(BaseModel):
    accepted: bool


class StopSessionResponse(BaseModel):
    status: str
    session_id: str


async def _connect_redis_background(app: FastAPI, registry: TranscriptionSessionRegistry):
    """Attach an EventBroker without blocking startup; the service runs degraded without it."""
    logger.info("🔌 Connecting to Redis (background)...")

    for retry_attempt in range(5):
        try:
            broker = await asyncio.wait_for(get_event_broker(), timeout=5.0)
            registry.event_broker = broker
            app.state.redis_client = broker.redis
            logger.info(f"✅ Redis connected, EventBroker attached (attempt {retry_attempt + 1})")
            return
        except asyncio.TimeoutError:
            logger.warning(f"⏳ Redis connection timeout (attempt {retry_attempt + 1}/5)")
        except Exception as e:
            logger.warning(f"⚠️ Redis error: {e} (attempt {retry_attempt + 1}/5)")
        if retry_attempt < 4:
            await asyncio.sleep(2.0)

    logger.warning("⚠️ Redis unavailable - session events will not be published")


def create_app(
    config: Optional[TranscriptionConfig] = None,
    registry: Optional[TranscriptionSessionRegistry] = None,
) -> FastAPI:
    """
    Build the service application.

    Args:
        config: Service configuration (TranscriptionConfig.from_env() by default)
        registry: Pre-built registry, e.g. with a fake provider socket in tests
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan handler for application startup/shutdown"""
        logger.info("=" * 70)
        logger.info("🚀 Starting Live Transcription Microservice")
        logger.info("=" * 70)

        service_config = config or (registry.config if registry else TranscriptionConfig.from_env())
        logger.info(f"📋 Configuration loaded | {service_config.describe()}")

        app.state.config = service_config
        app.state.registry = registry or TranscriptionSessionRegistry(service_config)
        app.state.redis_client = None
        app.state.start_time = time.time()

        setup_metrics(SERVICE_NAME, SERVICE_VERSION)

        redis_task = None
        if service_config.publish_events and app.state.registry.event_broker is None:
            redis_task = asyncio.create_task(_connect_redis_background(app, app.state.registry))

        if not service_config.enabled:
            logger.warning("⚠️ Live transcription disabled (no API key) - start requests will be rejected")

        logger.info("=" * 70)
        logger.info("✅ Live Transcription Microservice Ready")
        logger.info("=" * 70)

        yield

        logger.info("=" * 70)
        logger.info("🛑 Shutting down Live Transcription microservice...")
        logger.info("=" * 70)

        if redis_task and not redis_task.done():
            redis_task.cancel()
            try:
                await redis_task
            except asyncio.CancelledError:
                pass

        await app.state.registry.shutdown()
        logger.info("✅ All sessions stopped")

        if app.state.redis_client is not None:
            await close_redis_client()
            logger.info("✅ Redis connection closed")

        logger.info("✅ Live Transcription microservice stopped")

    app = FastAPI(
        title="Live Transcription Service",
        description="Real-time speech-to-text streaming with turn aggregation",
        version=SERVICE_VERSION,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _registry(request_or_ws) -> TranscriptionSessionRegistry:
    return request_or_ws.app.state.registry


def _register_routes(app: FastAPI):

    @app.post("/api/v1/sessions", response_model=StartSessionResponse)
    async def start_session(request: Request, body: Optional[StartSessionRequest] = None):
        """
        Start a live transcription session.

        The provider handshake completes in the background; session-started
        follows once the provider acknowledges.
        """
        registry = _registry(request)
        metadata = body.model_dump() if body else {}
        session_id = metadata.get("session_id")
        if session_id and session_id in registry.sessions:
            raise HTTPException(status_code=409, detail=f"Session {session_id} already exists")

        try:
            return registry.start_session(metadata)
        except ServiceDisabledError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ProviderUnavailableError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/api/v1/sessions")
    async def list_sessions(request: Request):
        return {"sessions": _registry(request).list_sessions()}

    @app.post("/api/v1/sessions/{session_id}/chunks", response_model=ChunkResponse)
    async def push_chunk(session_id: str, chunk: ChunkRequest, request: Request):
        """Push one base64 chunk; accepted=false when the session is not ready."""
        registry = _registry(request)
        if registry.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return {"accepted": await registry.push_chunk(session_id, chunk.model_dump())}

    @app.delete("/api/v1/sessions/{session_id}", response_model=StopSessionResponse)
    async def stop_session(session_id: str, request: Request):
        if not await _registry(request).stop_session(session_id):
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return {"status": "stopped", "session_id": session_id}

    @app.websocket("/api/v1/transcribe/stream")
    async def transcribe_stream(
        websocket: WebSocket,
        source_name: Optional[str] = Query(None),
        source_type: str = Query("mic"),
        platform: Optional[str] = Query(None),
        session_id: Optional[str] = Query(None),
    ):
        """
        WebSocket endpoint for real-time transcription.

        Binary frames are PCM16 chunks. JSON commands:
            {"type": "chunk", "sequence", "data"}  base64 chunk
            {"type": "stop"}                       graceful stop
            {"type": "ping"}                       keepalive
        Every event of the session is forwarded as JSON.
        """
        await websocket.accept()
        registry = _registry(websocket)

        try:
            started = registry.start_session({
                "session_id": session_id,
                "source_name": source_name,
                "source_type": source_type,
                "platform": platform,
            })
        except (ServiceDisabledError, ProviderUnavailableError, ValueError) as e:
            logger.warning(f"⚠️ Rejected WebSocket session: {e}")
            await websocket.send_json({"type": "error", "error": str(e), "timestamp": time.time()})
            await websocket.close(code=1008)
            return

        session_id = started["session_id"]
        outbox: asyncio.Queue = asyncio.Queue()
        outbox.put_nowait({"type": "connected", "session_id": session_id, "timestamp": time.time()})

        def forward(event: VoiceEvent):
            if event.session_id == session_id:
                outbox.put_nowait(event)

        unsubscribe = registry.on(ALL_EVENTS, forward)
        sender = asyncio.create_task(_forward_events(websocket, outbox, session_id))

        logger.info("=" * 70)
        logger.info(f"[{session_id}] 🔌 WebSocket session established")
        logger.info(f"[{session_id}]    Source: {source_name} ({source_type}) | Remote: {websocket.client}")
        logger.info("=" * 70)

        sequence = 0
        stopped_by_client = False
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"[{session_id}] 🔌 WebSocket disconnected")
                    break

                if message.get("bytes") is not None:
                    await registry.push_chunk(session_id, AudioChunk(sequence=sequence, data=message["bytes"]))
                    sequence += 1
                    continue

                if message.get("text") is None:
                    continue

                try:
                    command = json.loads(message["text"])
                except json.JSONDecodeError:
                    logger.warning(f"[{session_id}] ⚠️ Invalid JSON command received")
                    outbox.put_nowait({"type": "error", "error": "Invalid JSON command"})
                    continue

                command_type = command.get("type")
                if command_type == "chunk":
                    command.setdefault("sequence", sequence)
                    await registry.push_chunk(session_id, command)
                    sequence = int(command["sequence"]) + 1
                elif command_type == "stop":
                    logger.info(f"[{session_id}] 🛑 Stop requested by client")
                    stopped_by_client = True
                    await registry.stop_session(session_id, reason=command.get("reason") or "stopped")
                    break
                elif command_type == "ping":
                    outbox.put_nowait({"type": "pong", "session_id": session_id, "timestamp": time.time()})
                else:
                    outbox.put_nowait({"type": "error", "error": f"Unknown command: {command_type}"})

        except (WebSocketDisconnect, RuntimeError):
            logger.info(f"[{session_id}] 🔌 WebSocket disconnected/closed")
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Unexpected WebSocket error: {e}", exc_info=True)
        finally:
            logger.info(f"[{session_id}] 🧹 Cleaning up session")
            if registry.get_session(session_id) is not None:
                await registry.stop_session(session_id, reason="client-disconnected")

            unsubscribe()
            outbox.put_nowait(None)
            try:
                await asyncio.wait_for(sender, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                sender.cancel()

            if stopped_by_client:
                try:
                    await websocket.close(code=1000)
                except RuntimeError:
                    pass

    @app.get("/health")
    async def health_check(request: Request):
        """
        Health check endpoint.

        Returns:
            dict: Service health status
        """
        state = request.app.state
        registry = state.registry

        redis_connected = False
        if state.redis_client is not None:
            redis_connected = await ping_redis(state.redis_client)

        status = "healthy"
        if not state.config.enabled:
            status = "disabled"
        elif state.config.publish_events and not redis_connected:
            status = "degraded"

        return {
            "status": status,
            "service": SERVICE_NAME,
            "provider": state.config.provider,
            "uptime_seconds": time.time() - state.start_time,
            "active_sessions": len(registry.sessions),
            "redis_connected": redis_connected,
            "registry_metrics": registry.get_performance_metrics(),
        }

    @app.get("/metrics")
    async def get_metrics():
        """Prometheus metrics."""
        content, content_type = get_metrics_response()
        return Response(content=content, media_type=content_type)


async def _forward_events(websocket: WebSocket, outbox: asyncio.Queue, session_id: str):
    """Send queued session events to the client until the None sentinel."""
    while True:
        item = await outbox.get()
        if item is None:
            return
        message = item.to_client_dict() if isinstance(item, VoiceEvent) else item
        message.setdefault("timestamp", item.timestamp if isinstance(item, VoiceEvent) else time.time())
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.debug(f"[{session_id}] Could not forward {message.get('type')}: {e}")
            return


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stt_live.app:app",
        host=os.getenv("TRANSCRIPTION_HOST", "0.0.0.0"),
        port=int(os.getenv("TRANSCRIPTION_PORT", "8001")),
        log_level="info",
        reload=False
    )
