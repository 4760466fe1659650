"""
Background preload cache for transition clips.

One instance lives for the lifetime of an open project. Clips are fetched in
fire-and-forget tasks, each address at most once; entries are never evicted
while the instance is open. Addresses that failed to load are remembered and
not retried until the cache is closed.
"""
from __future__ import annotations

import asyncio
import inspect
import mimetypes
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union
from urllib.parse import urlparse

from orbitour.base import setup_logger
from orbitour.generation.media import MediaResolver

logger = setup_logger(__name__)

DEFAULT_CONTENT_TYPE = "video/mp4"


@dataclass(frozen=True)
class ClipHandle:
    url: str
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.data)


Fetcher = Callable[[str], Union[bytes, ClipHandle, Awaitable[Union[bytes, ClipHandle]]]]


def guess_content_type(url: str) -> str:
    if url.startswith("data:"):
        return url[5:].split(";", 1)[0].split(",", 1)[0] or DEFAULT_CONTENT_TYPE
    content_type, _ = mimetypes.guess_type(urlparse(url).path)
    return content_type or DEFAULT_CONTENT_TYPE


class VideoPreloadCache:
    def __init__(self, fetcher: Optional[Fetcher] = None, resolver: Optional[MediaResolver] = None):
        if fetcher is None:
            fetcher = (resolver if resolver is not None else MediaResolver()).resolve_async
        self._fetcher = fetcher
        self._ready: Dict[str, ClipHandle] = {}
        self._loading: Dict[str, asyncio.Task] = {}
        self._failed: Set[str] = set()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "VideoPreloadCache":
        return cls(resolver=MediaResolver.from_config(config))

    def preload(self, url: Optional[str]) -> Optional[asyncio.Task]:
        """Start loading ``url`` in the background unless it is known already.

        Must be called from a running event loop.
        """
        if not url or url in self._ready or url in self._loading or url in self._failed:
            return None
        task = asyncio.get_running_loop().create_task(self._load(url))
        self._loading[url] = task
        return task

    def preload_many(self, urls: Iterable[Optional[str]]) -> List[asyncio.Task]:
        tasks = []
        for url in urls:
            task = self.preload(url)
            if task is not None:
                tasks.append(task)
        return tasks

    async def _load(self, url: str) -> None:
        try:
            result = self._fetcher(url)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, ClipHandle):
                handle = result
            else:
                handle = ClipHandle(url, bytes(result), guess_content_type(url))
            self._ready[url] = handle
            logger.info(f"Preloaded {url[:100]} ({handle.size} bytes)")
        except Exception as e:
            self._failed.add(url)
            logger.warning(f"Preload failed for {url[:100]}: {e}")
        finally:
            if self._loading.get(url) is asyncio.current_task():
                del self._loading[url]

    def is_ready(self, url: Optional[str]) -> bool:
        return bool(url) and url in self._ready

    def is_loading(self, url: Optional[str]) -> bool:
        return bool(url) and url in self._loading

    def has_failed(self, url: Optional[str]) -> bool:
        return bool(url) and url in self._failed

    def get(self, url: Optional[str]) -> Optional[ClipHandle]:
        if not url:
            return None
        return self._ready.get(url)

    def __len__(self) -> int:
        return len(self._ready)

    async def wait_idle(self) -> None:
        while self._loading:
            await asyncio.gather(*list(self._loading.values()), return_exceptions=True)

    def close(self) -> None:
        for task in self._loading.values():
            task.cancel()
        self._loading.clear()
        self._ready.clear()
        self._failed.clear()
