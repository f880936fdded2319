"""
Realtime Transcription Service
Multilingual speech-to-text for live calls: per-speaker batching, language
detection, translation and transcript fan-out over Redis and WebSocket
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import numpy as np
import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .errors import SessionLimitError
from .metrics import metrics_endpoint
from .models import AUTO_LANGUAGE, SessionInfo, StatusEvent, StatusKind
from .notifier import RedisNotifier, RedisTranscriptStore, segment_payload, status_payload
from .provider import build_provider
from .session_manager import SessionManager
from .utils.logging import setup_logging
from .utils.redis_pool import RedisPool

setup_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger(__name__)

RECONNECT_DELAY_SECONDS = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("🎤 Starting Realtime Transcription Service")

    app.state.redis_pool = RedisPool(settings)
    await app.state.redis_pool.initialize()
    redis_client = app.state.redis_pool.client
    logger.info("✅ Redis connection pool established")

    app.state.provider = build_provider(settings)
    if app.state.provider.configured:
        await app.state.provider.initialize()
    logger.info(
        "✅ Transcription provider ready",
        provider=app.state.provider.name,
        configured=app.state.provider.configured,
    )

    app.state.session_manager = SessionManager(
        app.state.provider,
        notifier=RedisNotifier(redis_client, settings),
        store=RedisTranscriptStore(redis_client, settings),
        config=settings,
    )

    app.state.subscriber = asyncio.create_task(
        transcription_subscriber(app.state.redis_pool, app.state.session_manager)
    )

    yield

    logger.info("🛑 Shutting down Realtime Transcription Service")
    app.state.subscriber.cancel()
    await asyncio.gather(app.state.subscriber, return_exceptions=True)

    await app.state.session_manager.shutdown()
    await app.state.provider.close()
    await app.state.redis_pool.close()
    logger.info("✅ Transcription service shutdown complete")


app = FastAPI(
    title="Realtime Transcription Service",
    description="Multilingual streaming speech-to-text with language detection",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def transcription_subscriber(pool: RedisPool, manager: SessionManager):
    """Consume session control and audio messages from Redis, reconnecting on failure"""
    while True:
        pubsub = None
        try:
            pubsub = await pool.subscribe(settings.input_channel)
            logger.info("Transcription service subscribed to Redis channel", channel=settings.input_channel)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    message_data = message["data"]
                    if isinstance(message_data, bytes):
                        message_data = message_data.decode()
                    await handle_control_message(json.loads(message_data), manager)
                except json.JSONDecodeError as je:
                    logger.error("Invalid JSON in Redis message", error=str(je))
                except Exception as e:
                    logger.error("Error processing transcription message", error=str(e))
                    continue
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Redis connection error, attempting to reconnect", error=str(e))
        finally:
            if pubsub is not None:
                await close_pubsub(pubsub)
        await asyncio.sleep(RECONNECT_DELAY_SECONDS)


async def close_pubsub(pubsub):
    try:
        await pubsub.aclose()
    except Exception as e:
        logger.warning("Failed to close Redis subscription", error=str(e))


async def handle_control_message(data: Dict[str, Any], manager: SessionManager):
    """Dispatch one ingress message to the session manager"""
    message_type = data.get("type")
    session_id = data.get("session_id")

    if message_type == "transcription:audio":
        if not session_id:
            logger.warning("Missing session_id in audio message")
            return
        await manager.push_encoded(session_id, data.get("chunk"), data.get("metadata"))

    elif message_type == "transcription:start":
        if not session_id:
            logger.warning("Missing session_id in start message")
            return
        info = SessionInfo(
            session_id=session_id,
            target_language=data.get("language") or AUTO_LANGUAGE,
            owner_id=data.get("owner_id"),
            call_id=data.get("call_id"),
            room_id=data.get("room_id"),
            connection_id=data.get("connection_id"),
        )
        try:
            await manager.start(info)
        except SessionLimitError as e:
            logger.warning("Session rejected", session_id=session_id, error=str(e))
            if manager.notifier:
                await manager.notifier.publish_status(
                    StatusEvent(session_id=session_id, status=StatusKind.ERROR, reason="session_limit"),
                    info,
                )

    elif message_type == "transcription:stop":
        if session_id:
            manager.begin_stop(session_id, data.get("reason") or "stopped")

    elif message_type == "disconnect":
        connection_id = data.get("connection_id")
        if connection_id:
            manager.begin_disconnect(connection_id)

    else:
        logger.debug("Ignoring unknown message type", message_type=message_type)


@app.websocket("/stream")
async def stream_endpoint(websocket: WebSocket):
    """WebSocket endpoint for one speaker's audio stream"""
    await websocket.accept()
    manager: SessionManager = app.state.session_manager
    connection_id = f"ws_{uuid.uuid4().hex[:12]}"
    session_id: Optional[str] = None
    sample_rate = settings.sample_rate
    channels = 1

    async def send_event(kind: str, payload: Any):
        if kind == "final":
            await websocket.send_json({"type": "transcript", "data": segment_payload(payload)})
        else:
            await websocket.send_json({"type": "status", "data": status_payload(payload)})

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                if session_id is None:
                    await websocket.send_json({"type": "error", "error": "session_not_started"})
                elif sample_rate != settings.sample_rate or channels != 1:
                    samples = np.frombuffer(message["bytes"][: len(message["bytes"]) // 2 * 2], dtype="<i2")
                    await manager.push_samples(session_id, samples, sample_rate, channels)
                else:
                    await manager.push_audio(session_id, message["bytes"])
                continue

            try:
                data = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "invalid_json"})
                continue

            message_type = data.get("type")
            if message_type == "start":
                if session_id is not None:
                    await manager.stop(session_id)
                session_id = data.get("session_id") or connection_id
                sample_rate = int(data.get("sample_rate") or settings.sample_rate)
                channels = int(data.get("channels") or 1)
                info = SessionInfo(
                    session_id=session_id,
                    target_language=data.get("language") or AUTO_LANGUAGE,
                    owner_id=data.get("owner_id"),
                    call_id=data.get("call_id"),
                    connection_id=connection_id,
                )
                try:
                    pipeline = await manager.start(info, listener=send_event)
                except SessionLimitError:
                    await websocket.send_json({"type": "error", "error": "session_limit"})
                    pipeline = None
                if pipeline is None:
                    session_id = None

            elif message_type == "audio":
                if session_id is None:
                    await websocket.send_json({"type": "error", "error": "session_not_started"})
                    continue
                await manager.push_encoded(session_id, data.get("chunk"), data.get("metadata"))

            elif message_type == "stop":
                if session_id is not None:
                    await manager.stop(session_id)
                    await websocket.send_json({"type": "stopped", "session_id": session_id})
                    session_id = None

            else:
                await websocket.send_json({"type": "error", "error": "unknown_message_type"})

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", connection_id=connection_id)
    except Exception as e:
        logger.error("WebSocket stream error", connection_id=connection_id, error=str(e))
    finally:
        await manager.disconnect(connection_id)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    provider = app.state.provider
    redis_pool = getattr(app.state, "redis_pool", None)
    return {
        "status": "healthy",
        "service": "transcription",
        "provider": provider.name,
        "provider_configured": provider.configured,
        "redis": await redis_pool.health_check() if redis_pool else {"connected": False},
        "active_sessions": len(app.state.session_manager),
        "latency_mode": settings.latency_mode,
    }


@app.get("/sessions")
async def list_sessions():
    sessions = app.state.session_manager.list_sessions()
    return {"sessions": sessions, "count": len(sessions)}


@app.post("/sessions/{session_id}/stop")
async def stop_session(session_id: str):
    """Drain and close a session"""
    manager: SessionManager = app.state.session_manager
    if session_id not in manager:
        raise HTTPException(status_code=404, detail="Session not found")
    stopped = await manager.stop(session_id)
    return {"session_id": session_id, "stopped": stopped}


app.add_api_route("/metrics", metrics_endpoint, methods=["GET"])


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Global HTTP exception handler"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
            "path": request.url.path,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "path": request.url.path,
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
