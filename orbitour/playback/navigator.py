"""
Playback navigation state machine.

Idle shows the still image of the current waypoint. Transitioning plays a
generated clip that bridges to a target waypoint, backwards when only the
opposite segment exists. Requests made while transitioning are dropped.
"""
from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from orbitour.base import setup_logger
from orbitour.playback.autoplay import AutoplayTimer
from orbitour.playback.preload import VideoPreloadCache
from orbitour.tour.models import TourProject, VideoTransitionState, Waypoint

logger = setup_logger(__name__)

IMAGE = "image"
VIDEO = "video"

FORWARD = "forward"
BACKWARD = "backward"


@dataclass
class CurrentContent:
    type: str
    url: Optional[str]
    background_image_url: Optional[str] = None
    destination_image_url: Optional[str] = None
    is_video_ready: bool = False
    play_reverse: bool = False


class NavigationEngine:
    def __init__(
        self,
        project: TourProject,
        preload_cache: Optional[VideoPreloadCache] = None,
        autoplay: Optional[AutoplayTimer] = None,
        preload_radius: int = 2,
        start_index: int = 0,
    ):
        self.project = project
        self.preload_cache = preload_cache if preload_cache is not None else VideoPreloadCache()
        self.autoplay = autoplay
        self.preload_radius = preload_radius
        self.current_index = self._clamp(start_index)
        self.transition: Optional[VideoTransitionState] = None
        self.playback_direction: Optional[str] = None
        self.is_playing = False
        self.playback_speed = 1.0
        self._sync_autoplay()

    @classmethod
    def from_config(
        cls,
        project: TourProject,
        config: Dict[str, Any],
        preload_cache: Optional[VideoPreloadCache] = None,
    ) -> "NavigationEngine":
        """Engine with an autoplay timer, sharing ``preload_cache`` when one is given."""
        if preload_cache is None:
            preload_cache = VideoPreloadCache.from_config(config)
        return cls(
            project,
            preload_cache=preload_cache,
            autoplay=AutoplayTimer(interval_sec=float(config["autoplay_interval_sec"])),
            preload_radius=int(config["preload_radius"]),
        )

    @property
    def waypoints(self) -> List[Waypoint]:
        return self.project.waypoints

    @property
    def is_transitioning(self) -> bool:
        return self.transition is not None

    def _clamp(self, index: int) -> int:
        if not self.project.waypoints:
            return 0
        return max(0, min(index, len(self.project.waypoints) - 1))

    def _image_for(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.waypoints) and self.waypoints[index].image_url:
            return self.waypoints[index].image_url
        return self.project.source_image_url or None

    def _sync_autoplay(self) -> None:
        if self.autoplay is None:
            return
        self.autoplay.action = self.next_waypoint
        self.autoplay.set_gate(self.is_playing and self.transition is None and len(self.waypoints) > 1)

    def find_segment_video(self, from_index: int, to_index: int) -> Optional[Tuple[str, bool]]:
        """Return ``(video_url, play_reverse)`` for a ready segment joining the two waypoints."""
        n = len(self.waypoints)
        if not (0 <= from_index < n and 0 <= to_index < n):
            return None
        from_id = self.waypoints[from_index].id
        to_id = self.waypoints[to_index].id

        for segment in self.project.segments:
            if segment.from_waypoint_id == from_id and segment.to_waypoint_id == to_id and segment.is_playable:
                return segment.video_url, False
        for segment in self.project.segments:
            if segment.from_waypoint_id == to_id and segment.to_waypoint_id == from_id and segment.is_playable:
                return segment.video_url, True
        return None

    def navigate(self, target_index: int, direction: Optional[str] = None) -> bool:
        if self.transition is not None:
            logger.debug(f"Navigation to {target_index} dropped, transition in progress")
            return False
        if not self.waypoints:
            return False

        target = self._clamp(target_index)
        if target == self.current_index:
            return False
        direction = direction or (FORWARD if target > self.current_index else BACKWARD)

        match = self.find_segment_video(self.current_index, target)
        if match is not None:
            video_url, play_reverse = match
            self.transition = VideoTransitionState(
                is_playing=True,
                video_url=video_url,
                target_waypoint_index=target,
                is_video_ready=self.preload_cache.is_ready(video_url),
                play_reverse=play_reverse,
            )
            logger.info(f"Transition {self.current_index} -> {target} (reverse={play_reverse})")
        else:
            logger.info(f"No clip for {self.current_index} -> {target}, cutting {direction}")
            self.current_index = target
            self.playback_direction = direction
            self.preload_nearby()
        self._sync_autoplay()
        return True

    def next_waypoint(self) -> bool:
        if not self.waypoints:
            return False
        return self.navigate((self.current_index + 1) % len(self.waypoints), FORWARD)

    def previous_waypoint(self) -> bool:
        if not self.waypoints:
            return False
        return self.navigate((self.current_index - 1) % len(self.waypoints), BACKWARD)

    def handle_transition_end(self) -> None:
        if self.transition is None:
            return
        self.current_index = self.transition.target_waypoint_index
        self.transition = None
        self._sync_autoplay()
        self.preload_nearby()

    def handle_video_can_play(self) -> None:
        if self.transition is not None and not self.transition.is_video_ready:
            self.transition = dataclasses.replace(self.transition, is_video_ready=True)

    def toggle_playback(self) -> bool:
        self.is_playing = not self.is_playing
        self._sync_autoplay()
        return self.is_playing

    def set_playback_speed(self, speed: float) -> None:
        if speed <= 0:
            raise ValueError(f"Playback speed must be positive, got {speed}")
        self.playback_speed = speed
        if self.autoplay is not None:
            self.autoplay.speed = speed

    def get_current_content(self) -> CurrentContent:
        current_image = self._image_for(self.current_index)
        if self.transition is not None:
            return CurrentContent(
                type=VIDEO,
                url=self.transition.video_url,
                background_image_url=current_image,
                destination_image_url=self._image_for(self.transition.target_waypoint_index),
                is_video_ready=self.transition.is_video_ready,
                play_reverse=self.transition.play_reverse,
            )
        return CurrentContent(type=IMAGE, url=current_image, background_image_url=current_image)

    def preload_nearby(self) -> List[asyncio.Task]:
        """Preload ready clips touching waypoints within ``preload_radius`` of the current one."""
        n = len(self.waypoints)
        if n < 2:
            return []
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return []
        radius = min(self.preload_radius, n)
        nearby = {self.waypoints[(self.current_index + d) % n].id for d in range(-radius, radius + 1)}
        urls = [
            segment.video_url
            for segment in self.project.segments
            if segment.is_playable and (segment.from_waypoint_id in nearby or segment.to_waypoint_id in nearby)
        ]
        return self.preload_cache.preload_many(urls)
