from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

PENDING = "pending"
GENERATING = "generating"
READY = "ready"
FAILED = "failed"

STATUSES = (PENDING, GENERATING, READY, FAILED)


@dataclass
class Waypoint:
    id: str
    azimuth: str = "front"
    elevation: str = "eye-level"
    distance: str = "medium"
    status: str = PENDING
    image_url: Optional[str] = None
    is_original: bool = False


@dataclass(frozen=True)
class TransitionVersion:
    id: str
    video_url: str
    created_at: float
    is_selected: bool = True
    sdk_project_id: Optional[str] = None
    sdk_job_id: Optional[str] = None


@dataclass
class Segment:
    id: str
    from_waypoint_id: str
    to_waypoint_id: str
    status: str = PENDING
    video_url: Optional[str] = None
    progress: float = 0.0
    worker_name: Optional[str] = None
    error: Optional[str] = None
    versions: List[TransitionVersion] = field(default_factory=list)
    sdk_project_id: Optional[str] = None
    sdk_job_id: Optional[str] = None

    @property
    def is_playable(self) -> bool:
        return self.status == READY and bool(self.video_url)


@dataclass
class VideoTransitionState:
    is_playing: bool
    video_url: str
    target_waypoint_index: int
    is_video_ready: bool
    play_reverse: bool = False


@dataclass
class TourProject:
    id: str
    source_image_url: str = ""
    waypoints: List[Waypoint] = field(default_factory=list)
    segments: List[Segment] = field(default_factory=list)
    source_width: Optional[int] = None
    source_height: Optional[int] = None

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        for segment in self.segments:
            if segment.id == segment_id:
                return segment
        return None
