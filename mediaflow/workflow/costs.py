"""
Credit cost table.

Pure functions mapping (step kind, configuration) → integer credit cost.
Paid steps are image generation (quality × size) and video generation
(duration × resolution, plus an audio surcharge).
"""

import math

from .models import (
    ImageConfig,
    ImageQuality,
    ImageSize,
    PipelineVariant,
    VideoConfig,
    VideoResolution,
)
from .steps import IMAGE_GENERATION, VIDEO_GENERATION, PIPELINES

IMAGE_COSTS = {
    ImageQuality.STANDARD: {
        ImageSize.SQUARE: 2,
        ImageSize.LANDSCAPE: 3,
        ImageSize.PORTRAIT: 3,
    },
    ImageQuality.HD: {
        ImageSize.SQUARE: 3,
        ImageSize.LANDSCAPE: 5,
        ImageSize.PORTRAIT: 5,
    },
}

VIDEO_BASE_COSTS = {
    5: {VideoResolution.HD_720: 8, VideoResolution.FULL_HD: 12, VideoResolution.UHD_4K: 25},
    8: {VideoResolution.HD_720: 10, VideoResolution.FULL_HD: 15, VideoResolution.UHD_4K: 30},
    15: {VideoResolution.HD_720: 18, VideoResolution.FULL_HD: 25, VideoResolution.UHD_4K: 50},
    30: {VideoResolution.HD_720: 35, VideoResolution.FULL_HD: 50, VideoResolution.UHD_4K: 100},
    60: {VideoResolution.HD_720: 70, VideoResolution.FULL_HD: 100, VideoResolution.UHD_4K: 200},
}

AUDIO_SURCHARGE_RATE = 0.2


def image_cost(config: ImageConfig) -> int:
    return IMAGE_COSTS[config.quality][config.size]


def video_cost(config: VideoConfig) -> int:
    base = VIDEO_BASE_COSTS[config.duration][config.resolution]
    audio = math.ceil(base * AUDIO_SURCHARGE_RATE) if config.generate_audio else 0
    return base + audio


def step_cost(step_id: str, image_config: ImageConfig, video_config: VideoConfig) -> int:
    """Cost of one step; unpaid steps cost nothing."""
    if step_id == IMAGE_GENERATION:
        return image_cost(image_config)
    if step_id == VIDEO_GENERATION:
        return video_cost(video_config)
    return 0


def cost_breakdown(
    variant: PipelineVariant,
    image_config: ImageConfig,
    video_config: VideoConfig,
) -> dict[str, int]:
    """Per paid step cost for a variant, in pipeline order."""
    breakdown = {}
    for step_id in PIPELINES[variant]:
        cost = step_cost(step_id, image_config, video_config)
        if cost:
            breakdown[step_id] = cost
    return breakdown


def estimate_run_cost(
    variant: PipelineVariant,
    image_config: ImageConfig,
    video_config: VideoConfig,
) -> int:
    return sum(cost_breakdown(variant, image_config, video_config).values())
