from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from orbitour.generation.settings import (
    DEFAULT_SOURCE_SIZE,
    OUTPUT_FPS,
    QualityPreset,
    calculate_video_dimensions,
    calculate_video_frames,
    get_quality_preset,
)
from orbitour.tour.models import Segment


@dataclass
class GenerationRequest:
    """One transition job: a segment plus its resolved start and end frames."""

    segment: Segment
    from_image: bytes
    to_image: bytes
    prompt: str
    negative_prompt: str = ""
    resolution: str = "480p"
    quality: str = "fast"
    duration: float = 1.5
    token_type: str = "spark"
    source_width: Optional[int] = None
    source_height: Optional[int] = None
    # explicit wire values (model, steps, width, ...) that win over the derived ones
    overrides: Dict[str, Any] = field(default_factory=dict)

    @property
    def preset(self) -> QualityPreset:
        return get_quality_preset(self.quality)

    @property
    def dimensions(self) -> Tuple[int, int]:
        return calculate_video_dimensions(
            self.source_width or DEFAULT_SOURCE_SIZE,
            self.source_height or DEFAULT_SOURCE_SIZE,
            self.resolution,
        )

    @property
    def frames(self) -> int:
        return calculate_video_frames(self.duration)

    @property
    def fps(self) -> int:
        return OUTPUT_FPS

    def to_params(self) -> Dict[str, Any]:
        """Generation parameters shared by both transports, without the image payloads."""
        preset = self.preset
        width, height = self.dimensions
        params = {
            "model": preset.model,
            "steps": preset.steps,
            "shift": preset.shift,
            "guidance": preset.guidance,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "width": width,
            "height": height,
            "frames": self.frames,
            "fps": self.fps,
            "token_type": self.token_type,
        }
        params.update({k: v for k, v in self.overrides.items() if v is not None})
        return params
