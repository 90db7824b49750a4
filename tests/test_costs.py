import pytest

from mediaflow.workflow.costs import (
    cost_breakdown,
    estimate_run_cost,
    image_cost,
    step_cost,
    video_cost,
)
from mediaflow.workflow.models import (
    ImageConfig,
    ImageQuality,
    ImageSize,
    PipelineVariant,
    VideoConfig,
    VideoResolution,
)


@pytest.mark.parametrize("quality,size,expected", [
    (ImageQuality.STANDARD, ImageSize.SQUARE, 2),
    (ImageQuality.STANDARD, ImageSize.LANDSCAPE, 3),
    (ImageQuality.HD, ImageSize.SQUARE, 3),
    (ImageQuality.HD, ImageSize.PORTRAIT, 5),
])
def test_image_cost_table(quality, size, expected):
    assert image_cost(ImageConfig(quality=quality, size=size)) == expected


def test_video_cost_adds_audio_surcharge_rounded_up():
    silent = VideoConfig(duration=5, resolution=VideoResolution.HD_720, generate_audio=False)
    with_audio = VideoConfig(duration=5, resolution=VideoResolution.HD_720, generate_audio=True)
    assert video_cost(silent) == 8
    # 20% of 8 is 1.6, charged as 2
    assert video_cost(with_audio) == 10


def test_video_cost_scales_with_duration_and_resolution():
    assert video_cost(VideoConfig(duration=60, resolution=VideoResolution.UHD_4K, generate_audio=False)) == 200
    assert video_cost(VideoConfig(duration=8, resolution=VideoResolution.FULL_HD)) == 18


def test_unsupported_duration_is_rejected():
    with pytest.raises(ValueError):
        VideoConfig(duration=7)


def test_unpaid_steps_cost_nothing():
    assert step_cost("validation", ImageConfig(), VideoConfig()) == 0
    assert step_cost("finalization", ImageConfig(), VideoConfig()) == 0


def test_breakdown_per_variant():
    image, video = ImageConfig(), VideoConfig()
    assert cost_breakdown(PipelineVariant.COMPLETE, image, video) == {
        "image_generation": 5,
        "video_generation": 18,
    }
    assert cost_breakdown(PipelineVariant.IMAGE_ONLY, image, video) == {"image_generation": 5}
    assert cost_breakdown(PipelineVariant.VIDEO_FROM_IMAGE, image, video) == {"video_generation": 18}


def test_estimate_is_sum_of_breakdown():
    image = ImageConfig(quality=ImageQuality.STANDARD, size=ImageSize.SQUARE)
    video = VideoConfig(duration=15, resolution=VideoResolution.HD_720, generate_audio=False)
    assert estimate_run_cost(PipelineVariant.COMPLETE, image, video) == 2 + 18
