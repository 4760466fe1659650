"""
Video generation settings for waypoint transitions.

Model ids, quality presets, resolution tiers and the helpers that turn a
source image size and a duration into generation dimensions and frame counts.
"""
from dataclasses import dataclass
from typing import Dict, Tuple

VIDEO_MODELS = {
    # 4-step LoRA variant
    "speed": "wan_v2.2-14b-fp8_i2v_lightx2v",
    "quality": "wan_v2.2-14b-fp8_i2v",
}


@dataclass(frozen=True)
class QualityPreset:
    model: str
    steps: int
    shift: float
    guidance: float
    label: str


QUALITY_PRESETS: Dict[str, QualityPreset] = {
    "fast": QualityPreset(VIDEO_MODELS["speed"], 4, 5.0, 1.0, "Fast"),
    "balanced": QualityPreset(VIDEO_MODELS["speed"], 8, 5.0, 1.0, "Balanced"),
    "quality": QualityPreset(VIDEO_MODELS["quality"], 20, 8.0, 4.0, "High Quality"),
    "pro": QualityPreset(VIDEO_MODELS["quality"], 30, 8.0, 4.0, "Pro"),
}

# Short-side pixel size per resolution tier
VIDEO_RESOLUTIONS: Dict[str, int] = {
    "480p": 480,
    "580p": 580,
    "720p": 720,
}

BASE_FPS = 16
OUTPUT_FPS = 32
DIMENSION_DIVISOR = 16
DEFAULT_SOURCE_SIZE = 1024


def get_quality_preset(quality: str) -> QualityPreset:
    try:
        return QUALITY_PRESETS[quality]
    except KeyError:
        raise KeyError(f"Unknown quality preset '{quality}', expected one of {sorted(QUALITY_PRESETS)}") from None


def _round_to_divisor(value: float) -> int:
    return int(round(value / DIMENSION_DIVISOR)) * DIMENSION_DIVISOR


def calculate_video_dimensions(image_width: int, image_height: int, resolution: str = "480p") -> Tuple[int, int]:
    """
    Scale the source size so the short side matches the resolution tier.

    Both sides are rounded to a multiple of 16 and the aspect ratio of the
    source image is kept.
    """
    if resolution not in VIDEO_RESOLUTIONS:
        raise KeyError(f"Unknown resolution '{resolution}', expected one of {sorted(VIDEO_RESOLUTIONS)}")
    if image_width <= 0 or image_height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {image_width}x{image_height}")

    target = _round_to_divisor(VIDEO_RESOLUTIONS[resolution])
    if image_width <= image_height:
        return target, _round_to_divisor(image_height * target / image_width)
    return _round_to_divisor(image_width * target / image_height), target


def calculate_video_frames(duration: float) -> int:
    return int(BASE_FPS * duration) + 1
