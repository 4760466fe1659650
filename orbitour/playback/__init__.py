"""
Client-side playback for a generated tour: preload cache, navigation state
machine and the autoplay timer that drives it.
"""

from .autoplay import AutoplayTimer
from .navigator import CurrentContent, NavigationEngine
from .preload import ClipHandle, VideoPreloadCache

__all__ = ["AutoplayTimer", "ClipHandle", "CurrentContent", "NavigationEngine", "VideoPreloadCache"]
