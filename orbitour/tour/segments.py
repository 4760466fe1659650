from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from orbitour.base import setup_logger
from orbitour.generation.orchestrator import BatchCallbacks, normalize_error_message
from orbitour.tour.models import FAILED, GENERATING, PENDING, READY, Segment, TourProject, TransitionVersion, Waypoint

if TYPE_CHECKING:
    from orbitour.playback.preload import VideoPreloadCache

logger = setup_logger(__name__)


def build_loop_segments(waypoints: Sequence[Waypoint]) -> List[Segment]:
    """One pending segment per consecutive waypoint pair, closing the loop last -> first."""
    if len(waypoints) < 2:
        return []
    segments = []
    for i, waypoint in enumerate(waypoints):
        target = waypoints[(i + 1) % len(waypoints)]
        segments.append(
            Segment(
                id=f"{waypoint.id}-{target.id}",
                from_waypoint_id=waypoint.id,
                to_waypoint_id=target.id,
            )
        )
    return segments


def waypoint_image_map(project: TourProject) -> Dict[str, str]:
    return {wp.id: wp.image_url for wp in project.waypoints if wp.image_url}


def add_version(segment: Segment, version: TransitionVersion) -> None:
    segment.versions = [dataclasses.replace(v, is_selected=False) for v in segment.versions]
    segment.versions.append(dataclasses.replace(version, is_selected=True))
    segment.video_url = version.video_url
    segment.sdk_project_id = version.sdk_project_id
    segment.sdk_job_id = version.sdk_job_id


def select_version(segment: Segment, version_id: str) -> TransitionVersion:
    if not any(v.id == version_id for v in segment.versions):
        raise KeyError(f"Segment {segment.id} has no version {version_id}")
    segment.versions = [dataclasses.replace(v, is_selected=(v.id == version_id)) for v in segment.versions]
    selected = next(v for v in segment.versions if v.is_selected)
    segment.video_url = selected.video_url
    segment.sdk_project_id = selected.sdk_project_id
    segment.sdk_job_id = selected.sdk_job_id
    if segment.status != GENERATING:
        segment.status = READY
    return selected


def reset_for_regeneration(segment: Segment) -> None:
    segment.status = PENDING
    segment.progress = 0.0
    segment.error = None
    segment.worker_name = None


class SegmentTracker:
    """
    Applies orchestrator callbacks to a project's segments.

    Keeps status, progress and versions in step with the batch and schedules
    a preload for every clip that becomes ready.
    """

    def __init__(self, project: TourProject, preload_cache: Optional["VideoPreloadCache"] = None):
        self.project = project
        self.preload_cache = preload_cache
        self.out_of_credits = False
        self.finished = False

    def _segment(self, segment_id: str) -> Optional[Segment]:
        segment = self.project.get_segment(segment_id)
        if segment is None:
            logger.warning(f"Callback for unknown segment {segment_id}")
        return segment

    def on_segment_start(self, segment_id: str) -> None:
        segment = self._segment(segment_id)
        if segment is None:
            return
        segment.status = GENERATING
        segment.progress = 0.0
        segment.error = None

    def on_segment_progress(self, segment_id: str, percent: float, worker_name: Optional[str] = None) -> None:
        segment = self._segment(segment_id)
        if segment is None:
            return
        segment.progress = percent
        if worker_name:
            segment.worker_name = worker_name

    def on_segment_complete(self, segment_id: str, video_url: str, version: TransitionVersion) -> None:
        segment = self._segment(segment_id)
        if segment is None:
            return
        add_version(segment, version)
        segment.status = READY
        segment.progress = 100.0
        segment.error = None
        if self.preload_cache is not None:
            self.preload_cache.preload(video_url)

    def on_segment_error(self, segment_id: str, error: BaseException) -> None:
        segment = self._segment(segment_id)
        if segment is None:
            return
        segment.status = FAILED
        segment.error = normalize_error_message(str(error))

    def on_out_of_credits(self) -> None:
        self.out_of_credits = True

    def on_all_complete(self) -> None:
        self.finished = True

    def callbacks(self) -> BatchCallbacks:
        return BatchCallbacks(
            on_segment_start=self.on_segment_start,
            on_segment_progress=self.on_segment_progress,
            on_segment_complete=self.on_segment_complete,
            on_segment_error=self.on_segment_error,
            on_all_complete=self.on_all_complete,
            on_out_of_credits=self.on_out_of_credits,
        )
