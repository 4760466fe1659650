import asyncio
import base64
import json
from unittest.mock import MagicMock

import pytest

from orbitour.generation.events import Completed, Failed, Progress, Started
from orbitour.generation.request import GenerationRequest
from orbitour.generation.transports import DirectTransport, ProxiedTransport, select_transport
from orbitour.generation.transports.base import TransportError
from orbitour.generation.transports.proxied import (
    BackendApiClient,
    build_transition_payload,
    iter_sse_messages,
    to_data_url,
)
from orbitour.tour.models import Segment


class FakeBackend:
    def __init__(self, messages, project_id="backend-1"):
        self.messages = messages
        self.project_id = project_id
        self.client_app_id = "app-1"
        self.payloads = []
        self.closed = False

    def generate_transition(self, payload):
        self.payloads.append(payload)
        return self.project_id

    def stream_progress(self, project_id):
        assert project_id == self.project_id
        try:
            yield from self.messages
        finally:
            self.closed = True


def _request():
    return GenerationRequest(
        segment=Segment(id="a-b", from_waypoint_id="a", to_waypoint_id="b"),
        from_image=b"\xff\xd8jpeg",
        to_image=b"png",
        prompt="orbit",
    )


async def _collect(transport):
    return [event async for event in transport.submit(_request())]


def test_payload_uses_data_urls_and_wire_names():
    payload = build_transition_payload(_request(), client_app_id="app-1")
    assert payload["referenceImage"] == "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8jpeg").decode()
    assert payload["referenceImageEnd"].startswith("data:image/png;base64,")
    assert payload["negativePrompt"] == ""
    assert payload["tokenType"] == "spark"
    assert payload["frames"] == 25
    assert payload["clientAppId"] == "app-1"
    assert to_data_url(b"x").startswith("data:image/png")


def test_sse_parser_skips_heartbeats_and_bad_frames():
    lines = [
        'data: {"type": "connected"}',
        "",
        ": heartbeat",
        "",
        "data: {not json",
        "",
        "event: message",
        'data: {"type": "progress",',
        'data: "progress": 0.5}',
        "",
        'data: {"type": "completed"}',
    ]
    messages = list(iter_sse_messages(iter(lines)))
    assert messages == [
        {"type": "connected"},
        {"type": "progress", "progress": 0.5},
        {"type": "completed"},
    ]


def test_events_mapped_and_stream_closed_on_terminal():
    backend = FakeBackend(
        [
            {"type": "connected"},
            {"type": "progress", "progress": 0.25, "workerName": "w1"},
            {"type": "started", "jobId": "j1", "workerName": "w1"},
            {"type": "jobCompleted", "jobId": "j1", "resultUrl": "https://cdn/a.mp4", "sdkProjectId": "p", "sdkJobId": "j1"},
            {"type": "completed", "resultUrl": "https://cdn/late.mp4"},
        ]
    )
    events = asyncio.run(_collect(ProxiedTransport(backend)))
    assert events == [
        Progress(percent=25.0, worker_name="w1"),
        Started(job_id="j1", worker_name="w1"),
        Completed("https://cdn/a.mp4", sdk_project_id="p", sdk_job_id="j1"),
    ]
    assert backend.closed is True
    assert backend.payloads[0]["prompt"] == "orbit"


def test_completed_falls_back_to_image_urls():
    backend = FakeBackend([{"type": "completed", "imageUrls": ["https://cdn/b.mp4"]}])
    assert asyncio.run(_collect(ProxiedTransport(backend))) == [Completed("https://cdn/b.mp4")]


def test_duplicate_job_completion_ignored():
    backend = FakeBackend(
        [
            {"type": "jobCompleted", "jobId": "j1"},
            {"type": "jobCompleted", "jobId": "j1", "resultUrl": "https://cdn/dup.mp4"},
            {"type": "completed", "resultUrl": "https://cdn/final.mp4"},
        ]
    )
    assert asyncio.run(_collect(ProxiedTransport(backend))) == [Completed("https://cdn/final.mp4")]


def test_error_and_timeout_events_fail():
    backend = FakeBackend([{"type": "error", "message": "Insufficient credits", "code": 402}])
    assert asyncio.run(_collect(ProxiedTransport(backend))) == [Failed("Insufficient credits", 402)]

    backend = FakeBackend([{"type": "timeout"}])
    assert asyncio.run(_collect(ProxiedTransport(backend))) == [Failed("Progress stream timed out")]


def test_stream_ending_without_terminal_fails():
    backend = FakeBackend([{"type": "connected"}, {"type": "progress", "progress": 0.9}])
    events = asyncio.run(_collect(ProxiedTransport(backend)))
    assert events[-1] == Failed("Progress stream closed before completion")
    assert backend.closed is True


def _http_response(status, body=None, lines=None):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = "ERR"
    resp.text = json.dumps(body or {})
    resp.json.return_value = body or {}
    resp.iter_lines.return_value = iter(lines or [])
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def test_backend_client_submit_and_stream():
    session = MagicMock()
    session.post.return_value = _http_response(200, {"success": True, "projectId": "p-9"})
    session.get.return_value = _http_response(200, lines=['data: {"type": "connected"}', "", 'data: {"type": "timeout"}', ""])
    api = BackendApiClient("http://api.local/", client_app_id="app-1", session=session)

    assert api.generate_transition({"prompt": "x"}) == "p-9"
    assert session.post.call_args.args[0] == "http://api.local/api/generate-transition"
    assert session.post.call_args.kwargs["headers"]["X-Client-App-ID"] == "app-1"

    messages = list(api.stream_progress("p-9"))
    assert [m["type"] for m in messages] == ["connected", "timeout"]
    assert session.get.call_args.args[0] == "http://api.local/api/progress/p-9"
    assert session.get.call_args.kwargs["stream"] is True


def test_backend_client_error_message_surfaces():
    session = MagicMock()
    session.post.return_value = _http_response(402, {"message": "Insufficient balance"})
    api = BackendApiClient("http://api.local", session=session)
    with pytest.raises(TransportError, match="Insufficient balance"):
        api.generate_transition({})

    session.post.return_value = _http_response(200, {"success": True})
    with pytest.raises(TransportError):
        api.generate_transition({})


def test_select_transport_prefers_authenticated_direct_client():
    backend = BackendApiClient("http://api.local", session=MagicMock())

    direct_client = MagicMock()
    direct_client.is_authenticated = True
    assert isinstance(select_transport(direct_client, backend), DirectTransport)

    direct_client.is_authenticated = False
    assert isinstance(select_transport(direct_client, backend), ProxiedTransport)
    assert isinstance(select_transport(None, backend), ProxiedTransport)
