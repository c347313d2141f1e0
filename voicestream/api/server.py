"""
voicestream/api/server.py
==========================
HTTP Surface — VoiceStream

Responsibility:
    - Expose session control over HTTP:
        POST /api/v1/session/start | pause | resume | stop
        POST /api/v1/session/secondary-source   {"enabled": bool}
        GET  /api/v1/session/status
        GET  /api/v1/session/segments
        GET  /api/v1/audio/sources
    - Stream pipeline events to WebSocket clients (WS /api/v1/session/events)
    - POST every sealed segment to SEGMENT_WEBHOOK_URL (storage hand-off)

Pipeline events are published on capture / scheduler / timer threads; this
module hops them onto the event loop with call_soon_threadsafe and
run_coroutine_threadsafe. Blocking session calls run in worker threads.

This module does NOT:
    - Persist segments (the webhook receiver does)
    - Authenticate callers
"""

import asyncio
import logging
import threading

import aiohttp
from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from voicestream.audio.sources import AudioSourceManager
from voicestream.config import StreamingConfig
from voicestream.errors import AcquisitionError, SchedulerStateError
from voicestream.events import Event, EventType
from voicestream.log_buffer import install_ring_buffer
from voicestream.session import SessionState, StreamingSession

logger = logging.getLogger("voicestream.api")

_CLIENT_QUEUE_SIZE: int = 500
_WEBHOOK_TIMEOUT_SECONDS: int = 30


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="VoiceStream",
    description="Adaptive streaming transcription and translation — session control and live events.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Factories (patched in tests)
# ---------------------------------------------------------------------------


def create_session() -> StreamingSession:
    return StreamingSession(config=StreamingConfig.from_env(), log_buffer=install_ring_buffer())


def create_source_manager() -> AudioSourceManager:
    return AudioSourceManager(config=StreamingConfig.from_env())


# ---------------------------------------------------------------------------
# Event fan-out
# ---------------------------------------------------------------------------


class EventHub:
    """Thread-safe bridge from the EventBus to per-client asyncio queues."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []

    def register(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=_CLIENT_QUEUE_SIZE)
        with self._lock:
            self._clients.append((asyncio.get_running_loop(), queue))
        return queue

    def unregister(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._clients = [(lp, q) for lp, q in self._clients if q is not queue]

    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def publish(self, event: Event) -> None:
        """EventBus handler; may run on any thread."""
        message = event.to_dict()
        with self._lock:
            clients = list(self._clients)
        for loop, queue in clients:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_offer, queue, message)


def _offer(queue: asyncio.Queue, message: dict) -> None:
    # Slow clients lose their oldest events rather than stalling the pipeline.
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(message)


class SegmentWebhook:
    """Forwards ``segment_created`` events to the storage collaborator."""

    def __init__(self, url: str, loop: asyncio.AbstractEventLoop) -> None:
        self.url = url
        self._loop = loop

    def __call__(self, event: Event) -> None:
        payload = event.to_dict()["data"]
        if self._loop.is_closed():
            logger.warning("Event loop closed — segment webhook skipped.")
            return
        asyncio.run_coroutine_threadsafe(self.post(payload), self._loop)

    async def post(self, payload: dict) -> int | None:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=aiohttp.ClientTimeout(total=_WEBHOOK_TIMEOUT_SECONDS),
                ) as resp:
                    logger.info("Segment webhook POST to %s — status %d", self.url, resp.status)
                    return resp.status
        except Exception as exc:
            logger.error("Segment webhook POST failed: %s", exc)
            return None


hub = EventHub()

_session: StreamingSession | None = None
_session_lock = threading.Lock()


def current_session() -> StreamingSession | None:
    with _session_lock:
        return _session


def _require_session() -> StreamingSession:
    session = current_session()
    if session is None:
        raise HTTPException(status_code=404, detail="No session has been started.")
    return session


# ---------------------------------------------------------------------------
# Session control
# ---------------------------------------------------------------------------


@app.post("/api/v1/session/start")
async def start_session():
    """Create a new session (replacing a stopped one) and start capturing."""
    global _session

    with _session_lock:
        existing = _session
    if existing is not None and existing.state in (SessionState.RUNNING, SessionState.PAUSED):
        raise HTTPException(status_code=409, detail="A session is already running.")

    session = create_session()
    session.events.subscribe_all(hub.publish)
    if session.config.segment_webhook_url:
        session.events.subscribe(
            EventType.SEGMENT_CREATED,
            SegmentWebhook(session.config.segment_webhook_url, asyncio.get_running_loop()),
        )
    else:
        logger.debug("SEGMENT_WEBHOOK_URL not configured — segments stay in memory.")

    try:
        await asyncio.to_thread(session.start)
    except AcquisitionError as exc:
        logger.error("Session start failed: %s", exc.message)
        return JSONResponse(
            status_code=503,
            content={"detail": exc.message, "failures": exc.failures},
        )
    except SchedulerStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    with _session_lock:
        _session = session

    return JSONResponse(status_code=200, content=session.get_status())


@app.post("/api/v1/session/pause")
async def pause_session():
    session = _require_session()
    await asyncio.to_thread(session.pause)
    return session.get_status()


@app.post("/api/v1/session/resume")
async def resume_session():
    session = _require_session()
    await asyncio.to_thread(session.resume)
    return session.get_status()


@app.post("/api/v1/session/stop")
async def stop_session():
    session = _require_session()
    await asyncio.to_thread(session.stop)
    return {
        "status": session.get_status(),
        "segments": [s.to_dict() for s in session.get_all_segments()],
    }


@app.post("/api/v1/session/secondary-source")
async def toggle_secondary_source(enabled: bool = Body(..., embed=True)):
    session = _require_session()
    active = await asyncio.to_thread(session.toggle_secondary_source, enabled)
    return {"enabled": enabled, "active": active, "sources": session.get_status()["sources"]}


@app.get("/api/v1/session/status")
async def session_status():
    session = current_session()
    if session is None:
        return {"state": SessionState.IDLE.value}
    return session.get_status()


@app.get("/api/v1/session/segments")
async def session_segments():
    session = current_session()
    if session is None:
        return {"segments": [], "stats": None}
    return {
        "segments": [s.to_dict() for s in session.get_all_segments()],
        "stats": session.get_status()["segments"],
    }


@app.get("/api/v1/audio/sources")
async def audio_sources():
    """Probe which capture sources are available on this host."""
    session = current_session()
    if session is not None and session.state in (SessionState.RUNNING, SessionState.PAUSED):
        return await asyncio.to_thread(session.detect_available_sources)
    manager = create_source_manager()
    return await asyncio.to_thread(manager.detect_available_sources)


# ---------------------------------------------------------------------------
# Live events
# ---------------------------------------------------------------------------


@app.websocket("/api/v1/session/events")
async def session_events(websocket: WebSocket):
    await websocket.accept()
    queue = hub.register()
    logger.info("Event stream client connected (%d total).", hub.client_count())
    try:
        while True:
            message = await queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.info("Event stream client disconnected.")
    finally:
        hub.unregister(queue)
