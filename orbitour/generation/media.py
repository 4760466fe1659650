import asyncio
import base64
import binascii
import uuid
from typing import Dict, Iterable, Optional, Union
from urllib.parse import quote, urlparse

import requests

from orbitour.base import setup_logger

logger = setup_logger(__name__)

MEMORY_SCHEME = "mem://"

MediaReference = Union[str, bytes, bytearray]


class MediaFetchError(IOError):
    pass


def _decode_data_url(reference: str) -> bytes:
    header, sep, payload = reference.partition(",")
    if not sep:
        raise MediaFetchError("Malformed data URL: missing ',' separator")
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload, validate=True)
        return payload.encode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise MediaFetchError(f"Malformed data URL payload: {e}") from e


def host_matches(url: str, hosts: Iterable[str]) -> bool:
    hostname = (urlparse(url).hostname or "").lower()
    if not hostname:
        return False
    return any(hostname == h or hostname.endswith(f".{h}") for h in hosts)


class MediaResolver:
    """
    Turns an image or clip reference into raw bytes.

    Supported references: raw bytes, ``data:`` URLs, ``mem://`` handles
    registered on this resolver, and ``http(s)://`` URLs. Remote assets on
    known storage hosts get a second try through the backend proxy endpoint.
    """

    def __init__(
        self,
        api_base_url: str = "",
        proxy_image_path: str = "/api/proxy-image",
        proxy_hosts: Iterable[str] = (),
        timeout_sec: float = 60,
        session: Optional[requests.Session] = None,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.proxy_image_path = proxy_image_path
        self.proxy_hosts = [h.lower() for h in proxy_hosts]
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()
        self._handles: Dict[str, bytes] = {}

    @classmethod
    def from_config(cls, config: dict) -> "MediaResolver":
        return cls(
            api_base_url=config.get("api_base_url", ""),
            proxy_image_path=config.get("proxy_image_path", "/api/proxy-image"),
            proxy_hosts=config.get("proxy_hosts", []),
        )

    def register(self, data: bytes) -> str:
        handle = f"{MEMORY_SCHEME}{uuid.uuid4().hex}"
        self._handles[handle] = bytes(data)
        return handle

    def release(self, handle: str) -> None:
        self._handles.pop(handle, None)

    def proxied_url(self, url: str) -> str:
        return f"{self.api_base_url}{self.proxy_image_path}?url={quote(url, safe='')}"

    def resolve(self, reference: MediaReference) -> bytes:
        if isinstance(reference, (bytes, bytearray)):
            return bytes(reference)
        if not isinstance(reference, str) or not reference:
            raise MediaFetchError(f"Unsupported media reference: {reference!r}")
        if reference.startswith("data:"):
            return _decode_data_url(reference)
        if reference.startswith(MEMORY_SCHEME):
            data = self._handles.get(reference)
            if data is None:
                raise MediaFetchError(f"Unknown or released media handle: {reference}")
            return data
        if reference.startswith(("http://", "https://")):
            return self._fetch_remote(reference)
        raise MediaFetchError(f"Unsupported media reference: {reference[:80]}")

    async def resolve_async(self, reference: MediaReference) -> bytes:
        return await asyncio.to_thread(self.resolve, reference)

    def _get(self, url: str) -> bytes:
        resp = self.session.get(url, timeout=self.timeout_sec)
        if resp.status_code != 200:
            raise MediaFetchError(f"Fetch failed: {resp.status_code} {url[:100]}")
        return resp.content

    def _fetch_remote(self, url: str) -> bytes:
        try:
            return self._get(url)
        except (requests.RequestException, MediaFetchError) as e:
            if not self.api_base_url or not host_matches(url, self.proxy_hosts):
                raise MediaFetchError(f"Failed to fetch {url[:100]}: {e}") from e
            logger.warning(f"Direct fetch failed ({e}), retrying through proxy")

        try:
            return self._get(self.proxied_url(url))
        except requests.RequestException as e:
            raise MediaFetchError(f"Proxy fetch failed for {url[:100]}: {e}") from e
