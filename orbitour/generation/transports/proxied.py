import asyncio
import base64
import json
import uuid
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Set

import requests

from orbitour.base import setup_logger
from orbitour.generation.events import Completed, Failed, Progress, Started, TransportEvent
from orbitour.generation.request import GenerationRequest
from orbitour.generation.transports.base import TransportAdapter, TransportError

logger = setup_logger(__name__)


def to_data_url(data: bytes) -> str:
    mime = "image/jpeg" if data[:2] == b"\xff\xd8" else "image/png"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def build_transition_payload(request: GenerationRequest, client_app_id: Optional[str] = None) -> Dict[str, Any]:
    params = request.to_params()
    return {
        "referenceImage": to_data_url(request.from_image),
        "referenceImageEnd": to_data_url(request.to_image),
        "prompt": params["prompt"],
        "negativePrompt": params["negative_prompt"],
        "width": params["width"],
        "height": params["height"],
        "frames": params["frames"],
        "fps": params["fps"],
        "steps": params["steps"],
        "shift": params["shift"],
        "guidance": params["guidance"],
        "model": params["model"],
        "tokenType": params["token_type"],
        "quality": request.quality,
        "resolution": request.resolution,
        "duration": request.duration,
        "clientAppId": client_app_id,
    }


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and (body.get("message") or body.get("error") or body.get("detail")):
        return str(body.get("message") or body.get("error") or body.get("detail"))
    return f"HTTP {resp.status_code}: {resp.reason or resp.text[:200]}"


def iter_sse_messages(lines: Iterator[str]) -> Iterator[Dict[str, Any]]:
    """Parse ``data:`` frames of a server-sent event stream into JSON objects."""
    data_lines = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            if data_lines:
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    yield json.loads(payload)
                except json.JSONDecodeError:
                    logger.error(f"Error parsing SSE event: {payload[:200]}")
            continue
        if line.startswith(":"):
            # heartbeat
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        try:
            yield json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            logger.error("Error parsing trailing SSE event")


class BackendApiClient:
    """HTTP client for the backend that relays generation jobs over SSE."""

    def __init__(
        self,
        base_url: str,
        client_app_id: Optional[str] = None,
        timeout_sec: float = 60,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_app_id = client_app_id or f"orbitour-{uuid.uuid4()}"
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {"X-Client-App-ID": self.client_app_id}

    def generate_transition(self, payload: Dict[str, Any]) -> str:
        url = f"{self.base_url}/api/generate-transition"
        try:
            resp = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout_sec)
        except requests.RequestException as e:
            raise TransportError(f"Submit failed: {e}") from e
        if resp.status_code != 200:
            raise TransportError(_error_message(resp))
        project_id = resp.json().get("projectId")
        if not project_id:
            raise TransportError("Submit succeeded but no projectId was returned")
        return project_id

    def stream_progress(self, project_id: str) -> Iterator[Dict[str, Any]]:
        url = f"{self.base_url}/api/progress/{project_id}"
        try:
            resp = self.session.get(
                url,
                params={"clientAppId": self.client_app_id},
                headers={**self._headers(), "Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout_sec, None),
            )
        except requests.RequestException as e:
            raise TransportError(f"Progress stream failed to open: {e}") from e
        with resp:
            if resp.status_code != 200:
                raise TransportError(f"Progress stream failed: {_error_message(resp)}")
            try:
                yield from iter_sse_messages(resp.iter_lines(decode_unicode=True))
            except requests.RequestException as e:
                raise TransportError(f"Progress stream broken: {e}") from e


class ProxiedTransport(TransportAdapter):
    name = "proxied"

    def __init__(self, api: BackendApiClient):
        self.api = api

    def _map(self, message: Dict[str, Any], completed_jobs: Set[str]) -> Optional[TransportEvent]:
        event_type = message.get("type")
        if event_type in ("started", "initiating"):
            return Started(job_id=message.get("jobId"), worker_name=message.get("workerName"))
        if event_type == "progress":
            if message.get("progress") is None:
                return None
            return Progress(percent=float(message["progress"]) * 100, worker_name=message.get("workerName"))
        if event_type == "jobCompleted":
            job_id = message.get("jobId") or message.get("sdkJobId")
            if job_id:
                if job_id in completed_jobs:
                    return None
                completed_jobs.add(job_id)
            if not message.get("resultUrl"):
                logger.warning(f"jobCompleted without resultUrl for job {job_id}")
                return None
            return Completed(
                message["resultUrl"],
                sdk_project_id=message.get("sdkProjectId"),
                sdk_job_id=message.get("sdkJobId") or job_id,
            )
        if event_type == "completed":
            urls = message.get("imageUrls") or []
            url = message.get("resultUrl") or (urls[0] if urls else None)
            if url:
                return Completed(url, sdk_project_id=message.get("sdkProjectId"), sdk_job_id=message.get("sdkJobId"))
            return Failed("Generation completed but no video URL received")
        if event_type == "error":
            return Failed(message.get("message") or message.get("error") or "Generation failed", message.get("code"))
        if event_type == "timeout":
            return Failed("Progress stream timed out")
        if event_type != "connected":
            logger.debug(f"Unhandled progress event type: {event_type}")
        return None

    async def submit(self, request: GenerationRequest) -> AsyncIterator[TransportEvent]:
        payload = build_transition_payload(request, client_app_id=self.api.client_app_id)
        project_id = await asyncio.to_thread(self.api.generate_transition, payload)
        logger.info(f"Backend project {project_id} started for segment {request.segment.id}")

        stream = self.api.stream_progress(project_id)
        completed_jobs: Set[str] = set()
        try:
            while True:
                message = await asyncio.to_thread(next, stream, None)
                if message is None:
                    break
                event = self._map(message, completed_jobs)
                if event is None:
                    continue
                yield event
                if isinstance(event, (Completed, Failed)):
                    return
        finally:
            try:
                stream.close()
            except ValueError:
                # still running in the worker thread after a cancellation
                logger.warning(f"Progress stream for {project_id} closed while busy")

        yield Failed("Progress stream closed before completion")
