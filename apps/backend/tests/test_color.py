import numpy as np
import pytest

from estate_photos.errors import ParameterOutOfRange
from estate_photos.pipeline import color
from estate_photos.pipeline.types import PixelBuffer


def test_hsl_round_trip_full_domain() -> None:
    levels = np.arange(256, dtype=np.uint8)
    green, blue = np.meshgrid(levels, levels, indexing="ij")
    worst = 0
    for red in range(256):
        pixels = np.stack([np.full_like(green, red), green, blue], axis=-1)
        restored = color.hsl_to_rgb(*color.rgb_to_hsl(pixels))
        diff = np.abs(restored.astype(np.int16) - pixels.astype(np.int16))
        worst = max(worst, int(diff.max()))
    assert worst <= 1


def test_warm_white_balance_on_grey() -> None:
    buffer = PixelBuffer.filled(4, 4, (128, 128, 128))
    _, _, before = color.rgb_to_hsl(buffer.pixels)

    color.white_balance(buffer, temperature=50.0)

    r, g, b = (int(v) for v in buffer.pixels[0, 0])
    assert r > g > b
    hue, saturation, after = color.rgb_to_hsl(buffer.pixels)
    assert 0.0 < float(hue[0, 0]) < 60.0
    assert float(saturation[0, 0]) > 0.0
    assert abs(float(after[0, 0]) - float(before[0, 0])) <= 0.5


def test_cool_white_balance_on_grey() -> None:
    buffer = PixelBuffer.filled(2, 2, (128, 128, 128))

    color.white_balance(buffer, temperature=-50.0)

    r, _, b = (int(v) for v in buffer.pixels[0, 0])
    assert b > r


def test_neutral_white_balance_is_a_no_op() -> None:
    pixels = np.random.default_rng(3).integers(0, 256, size=(8, 8, 3), dtype=np.uint8)
    buffer = PixelBuffer(pixels.copy())

    color.white_balance(buffer, 0.0, 0.0)

    assert np.array_equal(buffer.pixels, pixels)


def test_saturation_keeps_hue() -> None:
    buffer = PixelBuffer.filled(2, 2, (200, 100, 50))
    hue_before, sat_before, _ = color.rgb_to_hsl(buffer.pixels)

    color.adjust_saturation(buffer, 1.5)

    hue_after, sat_after, _ = color.rgb_to_hsl(buffer.pixels)
    assert abs(float(hue_after[0, 0]) - float(hue_before[0, 0])) < 2.0
    assert float(sat_after[0, 0]) > float(sat_before[0, 0])


def test_zero_saturation_yields_grey() -> None:
    buffer = PixelBuffer.filled(3, 3, (220, 60, 90))

    color.adjust_saturation(buffer, 0.0)

    r, g, b = buffer.pixels[1, 1]
    assert r == g == b


def test_exposure_and_contrast_keep_black() -> None:
    buffer = PixelBuffer.filled(5, 5, (0, 0, 0))

    color.adjust_exposure(buffer, 1.5)
    color.adjust_contrast(buffer, 1.4)
    color.recover_shadows(buffer, 1.0)

    assert int(buffer.pixels.max()) == 0


def test_tone_curves_are_monotone() -> None:
    ramp = np.repeat(np.arange(256, dtype=np.uint8)[None, :, None], 3, axis=2)

    for apply in (
        lambda buf: color.recover_shadows(buf, 1.0),
        lambda buf: color.recover_highlights(buf, 1.0),
        lambda buf: color.lift_midtones(buf, 0.5),
        lambda buf: color.adjust_contrast(buf, 1.3),
    ):
        buffer = apply(PixelBuffer(ramp.copy()))
        values = buffer.pixels[0, :, 0].astype(np.int16)
        assert np.all(np.diff(values) >= 0)


def test_shadow_recovery_lifts_dark_tones_only() -> None:
    buffer = PixelBuffer(np.array([[[40, 40, 40], [200, 200, 200]]], dtype=np.uint8))

    color.recover_shadows(buffer, 0.5)

    assert buffer.pixels[0, 0, 0] > 40
    assert buffer.pixels[0, 1, 0] == 200


def test_out_of_range_arguments_raise() -> None:
    buffer = PixelBuffer.filled(2, 2, (90, 90, 90))

    with pytest.raises(ParameterOutOfRange) as excinfo:
        color.white_balance(buffer, temperature=150.0)
    assert excinfo.value.name == "white_balance_temperature"

    with pytest.raises(ParameterOutOfRange):
        color.adjust_exposure(buffer, float("nan"))
    with pytest.raises(ParameterOutOfRange):
        color.recover_highlights(buffer, 1.5)
    with pytest.raises(ParameterOutOfRange):
        color.scale_pixels(buffer, 10.0)
