"""
Segment generation orchestrator.

Submits every eligible segment of a batch to the active transport at once and
runs a bounded, zero-delay retry loop per segment. Credit and authorization
failures stop the loop immediately and are reported once per batch.
"""
from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from orbitour.base import setup_logger
from orbitour.generation.events import Completed, Failed, Progress, Started
from orbitour.generation.media import MediaReference, MediaResolver
from orbitour.generation.request import GenerationRequest
from orbitour.generation.transports.base import TransportAdapter, TransportError
from orbitour.tour.models import Segment, TransitionVersion
from orbitour.utils.logging_setup import log_context

logger = setup_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
NON_RETRYABLE_PATTERNS = ("insufficient", "credits", "balance", "unauthorized", "forbidden")
OUT_OF_CREDITS_MESSAGE = "Insufficient credits"


class GenerationFailed(RuntimeError):
    """A job ran and reported failure, or could not be attempted at all."""

    def __init__(self, message: str, code: Optional[Union[int, str]] = None):
        super().__init__(message)
        self.code = code


def is_non_retryable(message: Optional[str]) -> bool:
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in NON_RETRYABLE_PATTERNS)


def normalize_error_message(message: Optional[str]) -> str:
    if is_non_retryable(message):
        return OUT_OF_CREDITS_MESSAGE
    return message or "Video generation failed"


@dataclass
class GenerationOptions:
    prompt: str = ""
    negative_prompt: str = ""
    resolution: str = "480p"
    quality: str = "fast"
    duration: float = 1.5
    token_type: str = "spark"
    source_width: Optional[int] = None
    source_height: Optional[int] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **overrides: Any) -> "GenerationOptions":
        values = {
            "prompt": config.get("default_prompt", ""),
            "resolution": config.get("default_resolution", "480p"),
            "quality": config.get("default_quality", "fast"),
            "duration": config.get("default_duration", 1.5),
            "token_type": config.get("default_token_type", "spark"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


Callback = Callable[..., Union[None, Awaitable[None]]]


@dataclass
class BatchCallbacks:
    """Optional hooks; each may be a plain function or a coroutine function."""

    on_segment_start: Optional[Callback] = None
    on_segment_progress: Optional[Callback] = None
    on_segment_complete: Optional[Callback] = None
    on_segment_error: Optional[Callback] = None
    on_all_complete: Optional[Callback] = None
    on_out_of_credits: Optional[Callback] = None


@dataclass(frozen=True)
class SegmentResult:
    segment_id: str
    video_url: str
    version: TransitionVersion
    attempts: int


@dataclass
class _BatchState:
    out_of_credits_notified: bool = False
    errors: Dict[str, BaseException] = field(default_factory=dict)


class SegmentOrchestrator:
    def __init__(
        self,
        transport: TransportAdapter,
        resolver: Optional[MediaResolver] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.transport = transport
        self.resolver = resolver if resolver is not None else MediaResolver()
        self.max_attempts = max_attempts

    async def _notify(self, callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Callback {getattr(callback, '__name__', callback)!r} raised")

    async def generate_batch(
        self,
        segments: Sequence[Segment],
        waypoint_images: Mapping[str, MediaReference],
        options: Optional[GenerationOptions] = None,
        callbacks: Optional[BatchCallbacks] = None,
        project_id: Optional[str] = None,
    ) -> Dict[str, Optional[SegmentResult]]:
        """
        Generate transition clips for a batch of segments.

        Args:
            segments: Segments to generate
            waypoint_images: Waypoint id -> image reference (bytes, data URL, mem:// handle or http URL)
            options: Prompt, quality and sizing shared by the whole batch
            callbacks: Hooks for progress and outcome reporting
            project_id: Only used for log context

        Returns:
            Segment id -> SegmentResult on success, None on failure, one entry per segment
        """
        options = options if options is not None else GenerationOptions()
        callbacks = callbacks if callbacks is not None else BatchCallbacks()
        batch = _BatchState()
        results: Dict[str, Optional[SegmentResult]] = {segment.id: None for segment in segments}

        with log_context(project_id=project_id, transport=self.transport.name):
            eligible: List[Segment] = []
            for segment in segments:
                missing = [
                    wid for wid in (segment.from_waypoint_id, segment.to_waypoint_id) if not waypoint_images.get(wid)
                ]
                if missing:
                    error = GenerationFailed(f"Missing image for waypoint(s): {', '.join(missing)}")
                    logger.error(f"Segment {segment.id} skipped: {error}")
                    batch.errors[segment.id] = error
                    await self._notify(callbacks.on_segment_error, segment.id, error)
                    continue
                eligible.append(segment)

            logger.info(f"Submitting {len(eligible)}/{len(segments)} segments via {self.transport.name}")
            outcomes = await asyncio.gather(
                *(self._run_segment(segment, waypoint_images, options, callbacks, batch) for segment in eligible)
            )
            for segment, outcome in zip(eligible, outcomes):
                results[segment.id] = outcome

            succeeded = sum(1 for r in results.values() if r is not None)
            logger.info(f"Batch finished: {succeeded}/{len(results)} segments ready")
            await self._notify(callbacks.on_all_complete)
        return results

    async def _run_segment(
        self,
        segment: Segment,
        waypoint_images: Mapping[str, MediaReference],
        options: GenerationOptions,
        callbacks: BatchCallbacks,
        batch: _BatchState,
    ) -> Optional[SegmentResult]:
        with log_context(segment_id=segment.id):
            await self._notify(callbacks.on_segment_start, segment.id)
            frames: Optional[Tuple[bytes, bytes]] = None
            last_error: Optional[BaseException] = None

            for attempt in range(1, self.max_attempts + 1):
                if attempt > 1:
                    await self._notify(callbacks.on_segment_progress, segment.id, 0, None)
                try:
                    if frames is None:
                        frames = await self._resolve_frames(segment, waypoint_images)
                    completed = await self._attempt(segment, frames, options, callbacks)
                except Exception as e:
                    last_error = e
                    # asset fetch errors carry urls in their message, only service errors are classified
                    if isinstance(e, (GenerationFailed, TransportError)) and is_non_retryable(str(e)):
                        logger.error(f"Attempt {attempt} failed with non-retryable error: {e}")
                        last_error = GenerationFailed(OUT_OF_CREDITS_MESSAGE, getattr(e, "code", None))
                        if not batch.out_of_credits_notified:
                            batch.out_of_credits_notified = True
                            await self._notify(callbacks.on_out_of_credits)
                        break
                    logger.warning(f"Attempt {attempt}/{self.max_attempts} failed: {e}")
                    continue

                version = TransitionVersion(
                    id=str(uuid.uuid4()),
                    video_url=completed.video_url,
                    created_at=time.time(),
                    is_selected=True,
                    sdk_project_id=completed.sdk_project_id,
                    sdk_job_id=completed.sdk_job_id,
                )
                logger.info(f"Segment ready after {attempt} attempt(s): {completed.video_url}")
                await self._notify(callbacks.on_segment_complete, segment.id, completed.video_url, version)
                return SegmentResult(segment.id, completed.video_url, version, attempt)

            error = last_error or GenerationFailed("Video generation failed")
            batch.errors[segment.id] = error
            await self._notify(callbacks.on_segment_error, segment.id, error)
            return None

    async def _resolve_frames(
        self, segment: Segment, waypoint_images: Mapping[str, MediaReference]
    ) -> Tuple[bytes, bytes]:
        from_image, to_image = await asyncio.gather(
            self.resolver.resolve_async(waypoint_images[segment.from_waypoint_id]),
            self.resolver.resolve_async(waypoint_images[segment.to_waypoint_id]),
        )
        return from_image, to_image

    async def _attempt(
        self,
        segment: Segment,
        frames: Tuple[bytes, bytes],
        options: GenerationOptions,
        callbacks: BatchCallbacks,
    ) -> Completed:
        request = GenerationRequest(
            segment=segment,
            from_image=frames[0],
            to_image=frames[1],
            prompt=options.prompt,
            negative_prompt=options.negative_prompt,
            resolution=options.resolution,
            quality=options.quality,
            duration=options.duration,
            token_type=options.token_type,
            source_width=options.source_width,
            source_height=options.source_height,
        )
        async with aclosing(self.transport.submit(request)) as events:
            async for event in events:
                if isinstance(event, Started):
                    logger.info(f"Job started on {event.worker_name or 'worker'}")
                elif isinstance(event, Progress):
                    percent = min(max(event.percent, 0.0), 100.0)
                    await self._notify(callbacks.on_segment_progress, segment.id, percent, event.worker_name)
                elif isinstance(event, Completed):
                    return event
                elif isinstance(event, Failed):
                    raise GenerationFailed(event.reason, event.code)
        raise TransportError("Event stream ended without a terminal event")
