import asyncio
import base64
from unittest.mock import MagicMock

import pytest
import requests

from orbitour.generation.media import MediaFetchError, MediaResolver, host_matches


def _response(status=200, content=b""):
    resp = MagicMock()
    resp.status_code = status
    resp.content = content
    return resp


def test_data_url_and_bytes_pass_through():
    resolver = MediaResolver()
    payload = base64.b64encode(b"\x89PNG-bytes").decode()
    assert resolver.resolve(f"data:image/png;base64,{payload}") == b"\x89PNG-bytes"
    assert resolver.resolve(b"raw") == b"raw"
    assert resolver.resolve(bytearray(b"raw")) == b"raw"


def test_malformed_data_url_raises():
    resolver = MediaResolver()
    with pytest.raises(MediaFetchError):
        resolver.resolve("data:image/png;base64")
    with pytest.raises(MediaFetchError):
        resolver.resolve("data:image/png;base64,@@not-base64@@")


def test_memory_handles():
    resolver = MediaResolver()
    handle = resolver.register(b"frame")
    assert handle.startswith("mem://")
    assert resolver.resolve(handle) == b"frame"
    resolver.release(handle)
    with pytest.raises(MediaFetchError):
        resolver.resolve(handle)


def test_unsupported_reference():
    with pytest.raises(MediaFetchError):
        MediaResolver().resolve("ftp://example.com/a.png")


def test_host_matching():
    hosts = ["r2.dev", "s3.amazonaws.com"]
    assert host_matches("https://pub-1.r2.dev/a.png", hosts)
    assert host_matches("https://s3.amazonaws.com/b/a.png", hosts)
    assert not host_matches("https://evil-r2.dev/a.png", hosts)
    assert not host_matches("not a url", hosts)


def test_remote_fetch_falls_back_to_proxy_for_known_host():
    session = MagicMock()
    session.get.side_effect = [requests.ConnectionError("cors"), _response(200, b"via-proxy")]
    resolver = MediaResolver(
        api_base_url="http://api.local/",
        proxy_hosts=["r2.dev"],
        session=session,
    )
    data = resolver.resolve("https://pub-1.r2.dev/wp 1.png")
    assert data == b"via-proxy"
    proxied = session.get.call_args_list[1].args[0]
    assert proxied.startswith("http://api.local/api/proxy-image?url=")
    assert "https%3A%2F%2Fpub-1.r2.dev%2Fwp%201.png" in proxied


def test_remote_fetch_unknown_host_fails_without_proxy():
    session = MagicMock()
    session.get.return_value = _response(404)
    resolver = MediaResolver(api_base_url="http://api.local", proxy_hosts=["r2.dev"], session=session)
    with pytest.raises(MediaFetchError):
        resolver.resolve("https://images.example.com/a.png")
    assert session.get.call_count == 1


def test_proxy_failure_is_typed():
    session = MagicMock()
    session.get.side_effect = [_response(500), _response(502)]
    resolver = MediaResolver(api_base_url="http://api.local", proxy_hosts=["r2.dev"], session=session)
    with pytest.raises(MediaFetchError):
        resolver.resolve("https://pub-1.r2.dev/a.png")


def test_resolve_async_runs_in_thread():
    resolver = MediaResolver()
    handle = resolver.register(b"async-frame")
    assert asyncio.run(resolver.resolve_async(handle)) == b"async-frame"
