"""
Direct transport: drives the generation service client in-process.

The client creates a remote project carrying both reference frames, then
reports job-scoped events to registered listeners and project-scoped
completion/failure to the project handle. Whichever terminal source fires
first resolves the job; a hard timeout resolves it as failed otherwise.
"""
from __future__ import annotations

import asyncio
import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Protocol, Set

from orbitour.base import setup_logger
from orbitour.generation.events import Completed, Failed, Progress, Started, TransportEvent, is_terminal
from orbitour.generation.request import GenerationRequest
from orbitour.generation.transports.base import TransportAdapter, TransportError

logger = setup_logger(__name__)

DEFAULT_TIMEOUT_SEC = 15 * 60
NO_RESULT_MESSAGE = "Generation completed but no video URL received"


@dataclass
class JobEvent:
    type: str
    project_id: str
    job_id: Optional[str] = None
    step: Optional[int] = None
    step_count: Optional[int] = None
    worker_name: Optional[str] = None
    result_url: Optional[str] = None


JobListener = Callable[[JobEvent], None]


class RemoteProject(Protocol):
    id: str

    def on(self, event: str, handler: Callable[..., None]) -> None: ...


class GenerationClient(Protocol):
    is_authenticated: bool

    async def create_project(self, **params: Any) -> RemoteProject: ...

    def add_job_listener(self, listener: JobListener) -> None: ...

    def remove_job_listener(self, listener: JobListener) -> None: ...


@contextmanager
def job_subscription(client: GenerationClient, listener: JobListener) -> Iterator[None]:
    client.add_job_listener(listener)
    try:
        yield
    finally:
        client.remove_job_listener(listener)


def build_project_params(request: GenerationRequest) -> Dict[str, Any]:
    params = request.to_params()
    return {
        "type": "video",
        "model_id": params["model"],
        "positive_prompt": params["prompt"],
        "negative_prompt": params["negative_prompt"],
        "width": params["width"],
        "height": params["height"],
        "steps": params["steps"],
        "shift": params["shift"],
        "guidance": params["guidance"],
        "frames": params["frames"],
        "fps": params["fps"],
        "number_of_media": 1,
        "number_of_previews": 3,
        "sampler": "euler",
        "scheduler": "simple",
        "output_format": "mp4",
        "token_type": params["token_type"],
        "reference_image": request.from_image,
        "reference_image_end": request.to_image,
    }


def _failure_from_error(error: Any) -> Failed:
    if isinstance(error, dict):
        return Failed(error.get("message") or "Video generation failed", error.get("code"))
    message = getattr(error, "message", None) or (str(error) if error else "")
    return Failed(message or "Video generation failed", getattr(error, "code", None))


class _ProjectEvents:
    """Maps one project's raw notifications onto transport events."""

    def __init__(self, project_id: str, emit: Callable[[TransportEvent], None]):
        self.project_id = project_id
        self._emit = emit
        self.finished = False
        self._completed_jobs: Set[str] = set()
        self._last_job_id: Optional[str] = None

    def resolve(self, event: TransportEvent) -> bool:
        if self.finished:
            return False
        if is_terminal(event):
            self.finished = True
        self._emit(event)
        return True

    def on_job(self, event: JobEvent) -> None:
        if event.project_id != self.project_id or self.finished:
            return
        if event.job_id:
            self._last_job_id = event.job_id

        if event.type in ("started", "initiating"):
            self.resolve(Started(job_id=event.job_id, worker_name=event.worker_name or "Worker"))
        elif event.type == "progress":
            if event.step is not None and (event.step_count or 0) > 0:
                percent = math.floor(event.step / event.step_count * 100)
                self.resolve(Progress(percent=float(percent), worker_name=event.worker_name or "Worker"))
        elif event.type in ("completed", "jobCompleted"):
            if event.job_id:
                if event.job_id in self._completed_jobs:
                    logger.debug(f"Ignoring duplicate completion for job {event.job_id}")
                    return
                self._completed_jobs.add(event.job_id)
            if event.result_url:
                self.resolve(Completed(event.result_url, sdk_project_id=self.project_id, sdk_job_id=event.job_id))
            else:
                logger.warning(f"Job {event.job_id} completed without a result url, waiting for project completion")
        else:
            logger.debug(f"Unhandled job event type: {event.type}")

    def on_completed(self, result_urls: Optional[List[str]] = None) -> None:
        if self.finished:
            logger.debug(f"Project {self.project_id} already finished, ignoring completed")
            return
        urls = [u for u in (result_urls or []) if u]
        if urls:
            self.resolve(Completed(urls[0], sdk_project_id=self.project_id, sdk_job_id=self._last_job_id))
        else:
            self.resolve(Failed(NO_RESULT_MESSAGE))

    def on_failed(self, error: Any = None) -> None:
        if self.finished:
            logger.debug(f"Project {self.project_id} already finished, ignoring failed")
            return
        self.resolve(_failure_from_error(error))


class DirectTransport(TransportAdapter):
    name = "direct"

    def __init__(self, client: GenerationClient, timeout_sec: float = DEFAULT_TIMEOUT_SEC):
        self.client = client
        self.timeout_sec = timeout_sec

    def _timeout_message(self) -> str:
        return f"Video project timeout after {self.timeout_sec / 60:g} minutes"

    async def submit(self, request: GenerationRequest) -> AsyncIterator[TransportEvent]:
        try:
            project = await self.client.create_project(**build_project_params(request))
        except Exception as e:
            raise TransportError(f"Failed to create project: {e}") from e
        logger.info(f"Project {project.id} created for segment {request.segment.id}")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def emit(event: TransportEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        events = _ProjectEvents(project.id, emit)
        deadline = loop.time() + self.timeout_sec

        with job_subscription(self.client, events.on_job):
            project.on("completed", events.on_completed)
            project.on("failed", events.on_failed)
            while True:
                timeout = None if events.finished else max(deadline - loop.time(), 0)
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Project {project.id} timed out after {self.timeout_sec}s")
                    events.resolve(Failed(self._timeout_message()))
                    continue
                yield event
                if is_terminal(event):
                    return
