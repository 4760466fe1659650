import asyncio
import base64
import json
from unittest.mock import MagicMock

import requests
from fastapi.testclient import TestClient

from orbitour.config.config import get_default_config
from orbitour.generation.events import Completed, Failed, Progress, Started
from orbitour.generation.transports.direct import JobEvent
from orbitour.server import ProgressChannel, create_app, stream_progress, to_wire_events

PNG = "data:image/png;base64," + base64.b64encode(b"\x89PNG frame").decode()


class FakeProject:
    def __init__(self, client):
        self.client = client
        self.id = "sdk-project"
        self.handlers = {}

    def on(self, event, handler):
        self.handlers[event] = handler
        if event == "failed":
            asyncio.get_running_loop().call_soon(self.client.script, self.client)


class FakeClient:
    is_authenticated = True

    def __init__(self, script):
        self.script = script
        self.listeners = []
        self.params = []

    async def create_project(self, **params):
        self.params.append(params)
        self.project = FakeProject(self)
        return self.project

    def add_job_listener(self, listener):
        self.listeners.append(listener)

    def remove_job_listener(self, listener):
        self.listeners.remove(listener)

    def job(self, event_type, **kwargs):
        for listener in list(self.listeners):
            listener(JobEvent(type=event_type, project_id=self.project.id, **kwargs))


def _succeed(client):
    client.job("started", job_id="j1", worker_name="gpu-1")
    client.job("progress", job_id="j1", step=1, step_count=2, worker_name="gpu-1")
    client.job("jobCompleted", job_id="j1", result_url="https://cdn/out.mp4")


def _fail(client):
    client.project.handlers["failed"]({"message": "Insufficient balance", "code": 4024})


def _config(**overrides):
    config = get_default_config()
    config.update(overrides)
    return config


def _sse_events(text):
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


def test_generate_transition_streams_progress():
    fake = FakeClient(_succeed)
    app = create_app(fake, config=_config(), session=MagicMock())
    with TestClient(app) as http:
        resp = http.post(
            "/api/generate-transition",
            json={"referenceImage": PNG, "referenceImageEnd": PNG, "prompt": "orbit", "steps": 6, "quality": "fast"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        project_id = body["projectId"]

        stream = http.get(f"/api/progress/{project_id}")
        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(stream.text)

    assert [e["type"] for e in events] == ["connected", "started", "progress", "jobCompleted", "completed"]
    assert events[2]["progress"] == 0.5
    assert events[-1]["resultUrl"] == "https://cdn/out.mp4"
    assert events[-1]["imageUrls"] == ["https://cdn/out.mp4"]
    params = fake.params[0]
    assert params["steps"] == 6
    assert params["reference_image"] == b"\x89PNG frame"
    assert params["positive_prompt"] == "orbit"
    assert fake.listeners == []


def test_failed_job_ends_stream_with_error():
    app = create_app(FakeClient(_fail), config=_config(), session=MagicMock())
    with TestClient(app) as http:
        project_id = http.post(
            "/api/generate-transition", json={"referenceImage": PNG, "referenceImageEnd": PNG}
        ).json()["projectId"]
        events = _sse_events(http.get(f"/api/progress/{project_id}").text)

    assert events[0]["type"] == "connected"
    assert events[-1] == {"type": "error", "message": "Insufficient balance", "code": 4024}


def test_generate_transition_validates_input():
    app = create_app(FakeClient(_succeed), config=_config(), session=MagicMock())
    with TestClient(app) as http:
        assert http.post("/api/generate-transition", json={"referenceImage": PNG}).status_code == 400
        bad = http.post("/api/generate-transition", json={"referenceImage": "data:nope", "referenceImageEnd": PNG})
        assert bad.status_code == 400
        unknown = http.post(
            "/api/generate-transition", json={"referenceImage": PNG, "referenceImageEnd": PNG, "quality": "ultra"}
        )
        assert unknown.status_code == 400
        assert http.get("/api/progress/nope").status_code == 404


def test_proxy_image_allow_list_and_upstream_errors():
    session = MagicMock()
    upstream = MagicMock()
    upstream.status_code = 200
    upstream.content = b"png-bytes"
    upstream.headers = {"content-type": "image/png"}
    session.get.return_value = upstream
    app = create_app(FakeClient(_succeed), config=_config(proxy_hosts=["r2.dev"]), session=session)

    with TestClient(app) as http:
        ok = http.get("/api/proxy-image", params={"url": "https://pub-1.r2.dev/wp.png"})
        assert ok.status_code == 200
        assert ok.content == b"png-bytes"
        assert ok.headers["content-type"] == "image/png"

        assert http.get("/api/proxy-image").status_code == 400
        assert http.get("/api/proxy-image", params={"url": "https://evil.example.com/x.png"}).status_code == 403

        upstream.status_code = 404
        assert http.get("/api/proxy-image", params={"url": "https://pub-1.r2.dev/gone.png"}).status_code == 404

        session.get.side_effect = requests.ConnectionError("down")
        assert http.get("/api/proxy-image", params={"url": "https://pub-1.r2.dev/wp.png"}).status_code == 502

        assert http.get("/health").json()["status"] == "healthy"


def test_wire_events_taxonomy():
    assert to_wire_events(Started("j", "w")) == [{"type": "started", "jobId": "j", "workerName": "w"}]
    assert to_wire_events(Progress(25.0, "w"))[0]["progress"] == 0.25
    assert [e["type"] for e in to_wire_events(Completed("u", "p", "j"))] == ["jobCompleted", "completed"]
    assert to_wire_events(Failed("nope", 1)) == [{"type": "error", "message": "nope", "code": 1}]


def test_channel_replay_is_bounded_and_stops_after_terminal():
    channel = ProgressChannel("p", max_pending=3)
    for i in range(5):
        channel.publish({"type": "progress", "progress": i / 10})
    channel.publish({"type": "completed", "resultUrl": "u"})
    channel.publish({"type": "progress", "progress": 1.0})

    async def scenario():
        return [chunk async for chunk in stream_progress(channel, heartbeat_sec=1)]

    chunks = asyncio.run(scenario())
    events = _sse_events("".join(chunks))
    assert [e["type"] for e in events] == ["connected", "progress", "progress", "completed"]
    assert events[1]["progress"] == 0.3
    assert channel.subscribers == []


def test_stream_sends_heartbeats_while_idle():
    channel = ProgressChannel("p")

    async def scenario():
        stream = stream_progress(channel, heartbeat_sec=0.01)
        first = await stream.__anext__()
        second = await stream.__anext__()
        channel.publish({"type": "timeout"})
        rest = [chunk async for chunk in stream]
        return first, second, rest

    first, second, rest = asyncio.run(scenario())
    assert '"connected"' in first
    assert second == ": heartbeat\n\n"
    assert _sse_events("".join(rest))[-1] == {"type": "timeout"}
