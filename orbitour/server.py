import asyncio
import json
import traceback
import uuid
from collections import deque
from datetime import datetime
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

import requests
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from orbitour.base import ApiResponse, setup_logger
from orbitour.config.config import load_config
from orbitour.generation.events import Completed, Failed, Progress, Started, TransportEvent
from orbitour.generation.media import MediaFetchError, MediaResolver, host_matches
from orbitour.generation.request import GenerationRequest
from orbitour.generation.transports.direct import DirectTransport, GenerationClient
from orbitour.tour.models import Segment
from orbitour.utils.logging_setup import log_context

logger = setup_logger(__name__)

TERMINAL_TYPES = ("completed", "error", "timeout")
# finished channels stay around this long so late subscribers still get the replay
FINISHED_CHANNEL_TTL_SEC = 300

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class TransitionRequest(BaseModel):
    referenceImage: Optional[str] = None
    referenceImageEnd: Optional[str] = None
    prompt: Optional[str] = None
    negativePrompt: str = ""
    quality: str = "fast"
    resolution: str = "480p"
    duration: float = 1.5
    tokenType: Optional[str] = None
    model: Optional[str] = None
    steps: Optional[int] = None
    shift: Optional[float] = None
    guidance: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frames: Optional[int] = None
    fps: Optional[int] = None
    clientAppId: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str


def to_wire_events(event: TransportEvent) -> List[Dict[str, Any]]:
    """Translate a transport event into the progress-stream taxonomy."""
    if isinstance(event, Started):
        return [{"type": "started", "jobId": event.job_id, "workerName": event.worker_name}]
    if isinstance(event, Progress):
        return [{"type": "progress", "progress": event.percent / 100, "workerName": event.worker_name}]
    if isinstance(event, Completed):
        return [
            {
                "type": "jobCompleted",
                "jobId": event.sdk_job_id,
                "resultUrl": event.video_url,
                "sdkProjectId": event.sdk_project_id,
                "sdkJobId": event.sdk_job_id,
            },
            {
                "type": "completed",
                "resultUrl": event.video_url,
                "imageUrls": [event.video_url],
                "sdkProjectId": event.sdk_project_id,
                "sdkJobId": event.sdk_job_id,
            },
        ]
    if isinstance(event, Failed):
        return [{"type": "error", "message": event.reason, "code": event.code}]
    raise TypeError(f"Unknown transport event: {event!r}")


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class ProgressChannel:
    """Fan-out of one job's events with a bounded replay buffer for late subscribers."""

    def __init__(self, project_id: str, max_pending: int = 50):
        self.project_id = project_id
        self.buffer: Deque[Dict[str, Any]] = deque(maxlen=max_pending)
        self.subscribers: List[asyncio.Queue] = []
        self.finished = False

    def publish(self, event: Dict[str, Any]) -> None:
        if self.finished:
            return
        self.buffer.append(event)
        for queue in self.subscribers:
            queue.put_nowait(event)
        if event.get("type") in TERMINAL_TYPES:
            self.finished = True

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        for event in self.buffer:
            queue.put_nowait(event)
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)


async def stream_progress(channel: ProgressChannel, heartbeat_sec: float) -> AsyncIterator[str]:
    queue = channel.subscribe()
    try:
        yield format_sse({"type": "connected", "projectId": channel.project_id})
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_sec)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            yield format_sse(event)
            if event.get("type") in TERMINAL_TYPES:
                break
    finally:
        channel.unsubscribe(queue)


def create_app(
    client: GenerationClient,
    config: Optional[Dict[str, Any]] = None,
    session: Optional[requests.Session] = None,
) -> FastAPI:
    """Backend that runs transition jobs on the direct transport and relays them over SSE."""
    config = config or load_config()
    session = session or requests.Session()
    resolver = MediaResolver(proxy_hosts=config.get("proxy_hosts", []), session=session)
    transport = DirectTransport(client, timeout_sec=config.get("direct_timeout_sec", 15 * 60))
    proxy_hosts = [h.lower() for h in config.get("proxy_hosts", [])]
    max_pending = config.get("sse_max_pending_events", 50)
    heartbeat_sec = config.get("sse_heartbeat_sec", 15)

    channels: Dict[str, ProgressChannel] = {}
    jobs: Set[asyncio.Task] = set()

    app = FastAPI(title="Orbitour Transition API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.channels = channels
    app.state.jobs = jobs

    def _forget_later(project_id: str) -> None:
        asyncio.get_running_loop().call_later(FINISHED_CHANNEL_TTL_SEC, channels.pop, project_id, None)

    async def run_job(project_id: str, request: GenerationRequest) -> None:
        channel = channels[project_id]
        with log_context(project_id=project_id, transport=transport.name):
            try:
                async for event in transport.submit(request):
                    for wire_event in to_wire_events(event):
                        channel.publish(wire_event)
            except Exception as e:
                logger.error(f"Transition job failed: {e}")
                logger.error(traceback.format_exc())
                channel.publish({"type": "error", "message": str(e)})
            finally:
                if not channel.finished:
                    channel.publish({"type": "error", "message": "Generation ended without a result"})
                _forget_later(project_id)

    @app.post("/api/generate-transition")
    async def generate_transition(body: TransitionRequest):
        if not body.referenceImage or not body.referenceImageEnd:
            raise HTTPException(status_code=400, detail="referenceImage and referenceImageEnd are required")
        try:
            from_image, to_image = await asyncio.gather(
                resolver.resolve_async(body.referenceImage),
                resolver.resolve_async(body.referenceImageEnd),
            )
        except MediaFetchError as e:
            raise HTTPException(status_code=400, detail=f"Invalid reference image: {e}")

        project_id = str(uuid.uuid4())
        request = GenerationRequest(
            segment=Segment(id=project_id, from_waypoint_id="start", to_waypoint_id="end"),
            from_image=from_image,
            to_image=to_image,
            prompt=body.prompt or config.get("default_prompt", ""),
            negative_prompt=body.negativePrompt,
            resolution=body.resolution,
            quality=body.quality,
            duration=body.duration,
            token_type=body.tokenType or config.get("default_token_type", "spark"),
            overrides={
                "model": body.model,
                "steps": body.steps,
                "shift": body.shift,
                "guidance": body.guidance,
                "width": body.width,
                "height": body.height,
                "frames": body.frames,
                "fps": body.fps,
            },
        )
        try:
            request.to_params()
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e).strip("'\""))

        channels[project_id] = ProgressChannel(project_id, max_pending=max_pending)
        task = asyncio.create_task(run_job(project_id, request))
        jobs.add(task)
        task.add_done_callback(jobs.discard)

        logger.info(f"POST /api/generate-transition - project: {project_id}, client: {body.clientAppId}")
        return ApiResponse(success=True, message="Transition generation started", projectId=project_id)

    @app.get("/api/progress/{project_id}")
    async def progress(project_id: str):
        channel = channels.get(project_id)
        if channel is None:
            raise HTTPException(status_code=404, detail=f"Unknown project {project_id}")
        return StreamingResponse(
            stream_progress(channel, heartbeat_sec),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/api/proxy-image")
    async def proxy_image(url: Optional[str] = None):
        if not url:
            raise HTTPException(status_code=400, detail="Missing url parameter")
        if not host_matches(url, proxy_hosts):
            raise HTTPException(status_code=403, detail="Host not allowed")
        try:
            resp = await asyncio.to_thread(session.get, url, timeout=60)
        except requests.RequestException as e:
            logger.error(f"Proxy fetch failed for {url[:100]}: {e}")
            raise HTTPException(status_code=502, detail="Failed to fetch upstream resource")
        if resp.status_code != 200:
            raise HTTPException(status_code=resp.status_code, detail=f"Upstream returned {resp.status_code}")
        return Response(
            content=resp.content,
            media_type=resp.headers.get("content-type", "application/octet-stream"),
            headers={"Cache-Control": "public, max-age=31536000"},
        )

    @app.get("/health")
    async def health():
        return HealthResponse(status="healthy", timestamp=datetime.now().isoformat())

    return app


def serve(client: GenerationClient, config: Optional[Dict[str, Any]] = None, host: str = "0.0.0.0", port: int = 3001):
    import uvicorn

    uvicorn.run(create_app(client, config=config), host=host, port=port)
