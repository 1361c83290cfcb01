from __future__ import annotations

import math
from typing import Callable

import numpy as np

from estate_photos.errors import ParameterOutOfRange
from estate_photos.pipeline.types import PixelBuffer

# Operator parameter bounds. Callers validate profiles first; the engine re-checks.
TEMPERATURE_RANGE = (-100.0, 100.0)
TINT_RANGE = (-100.0, 100.0)
BRIGHTNESS_RANGE = (-100.0, 100.0)
EXPOSURE_RANGE = (-4.0, 4.0)
FACTOR_RANGE = (0.0, 3.0)
AMOUNT_RANGE = (0.0, 1.0)
THRESHOLD_RANGE = (0.0, 100.0)
GAIN_RANGE = (0.25, 4.0)

WARM_HUE = 35.0
COOL_HUE = 215.0
MAGENTA_HUE = 300.0
GREEN_HUE = 120.0
# Saturation points added per unit of temperature/tint.
CAST_STRENGTH = 0.2

HslFn = Callable[[np.ndarray, np.ndarray, np.ndarray], tuple[np.ndarray, np.ndarray, np.ndarray]]


def check_range(name: str, value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    if value is None or math.isnan(value) or not low <= value <= high:
        raise ParameterOutOfRange(name, value, low, high)
    return float(value)


def rgb_to_hsl(pixels: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return hue [0, 360), saturation [0, 100] and lightness [0, 100] arrays."""
    rgb = pixels.astype(np.float64) / 255.0
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    max_c = rgb.max(axis=-1)
    min_c = rgb.min(axis=-1)
    delta = max_c - min_c
    lightness = (max_c + min_c) / 2.0

    chroma = delta > 0
    safe_delta = np.where(chroma, delta, 1.0)
    denom = np.where(lightness < 0.5, max_c + min_c, 2.0 - max_c - min_c)
    saturation = np.where(chroma, delta / np.where(chroma, denom, 1.0), 0.0)

    hue_r = np.mod((g - b) / safe_delta, 6.0)
    hue_g = (b - r) / safe_delta + 2.0
    hue_b = (r - g) / safe_delta + 4.0
    hue = np.where(max_c == r, hue_r, np.where(max_c == g, hue_g, hue_b))
    hue = np.where(chroma, np.mod(hue * 60.0, 360.0), 0.0)

    return hue, saturation * 100.0, lightness * 100.0


def _hue_to_rgb(p: np.ndarray, q: np.ndarray, t: np.ndarray) -> np.ndarray:
    t = np.mod(t, 1.0)
    return np.select(
        [t < 1.0 / 6.0, t < 0.5, t < 2.0 / 3.0],
        [p + (q - p) * 6.0 * t, q, p + (q - p) * (2.0 / 3.0 - t) * 6.0],
        default=p,
    )


def hsl_to_rgb(hue: np.ndarray, saturation: np.ndarray, lightness: np.ndarray) -> np.ndarray:
    h = np.mod(hue, 360.0) / 360.0
    s = np.clip(saturation, 0.0, 100.0) / 100.0
    l = np.clip(lightness, 0.0, 100.0) / 100.0

    q = np.where(l < 0.5, l * (1.0 + s), l + s - l * s)
    p = 2.0 * l - q

    rgb = np.stack(
        [
            _hue_to_rgb(p, q, h + 1.0 / 3.0),
            _hue_to_rgb(p, q, h),
            _hue_to_rgb(p, q, h - 1.0 / 3.0),
        ],
        axis=-1,
    )
    return np.clip(np.rint(rgb * 255.0), 0, 255).astype(np.uint8)


def _apply_hsl(buffer: PixelBuffer, fn: HslFn) -> PixelBuffer:
    hue, saturation, lightness = rgb_to_hsl(buffer.pixels)
    hue, saturation, lightness = fn(hue, saturation, lightness)
    buffer.pixels[...] = hsl_to_rgb(hue, saturation, lightness)
    return buffer


def _cast_vector(temperature: float, tint: float) -> tuple[float, float]:
    x = y = 0.0
    for amount, positive_hue, negative_hue in (
        (temperature, WARM_HUE, COOL_HUE),
        (tint, MAGENTA_HUE, GREEN_HUE),
    ):
        if amount == 0:
            continue
        angle = math.radians(positive_hue if amount > 0 else negative_hue)
        magnitude = abs(amount) * CAST_STRENGTH
        x += magnitude * math.cos(angle)
        y += magnitude * math.sin(angle)
    return x, y


def white_balance(buffer: PixelBuffer, temperature: float, tint: float = 0.0) -> PixelBuffer:
    """Shift every pixel's chroma towards warm/cool and magenta/green.

    Lightness is left untouched; this is the only operator meant to move hue.
    """
    temperature = check_range("white_balance_temperature", temperature, TEMPERATURE_RANGE)
    tint = check_range("white_balance_tint", tint, TINT_RANGE)
    cast_x, cast_y = _cast_vector(temperature, tint)
    if cast_x == 0 and cast_y == 0:
        return buffer

    def shift(h: np.ndarray, s: np.ndarray, l: np.ndarray):
        radians = np.radians(h)
        x = s * np.cos(radians) + cast_x
        y = s * np.sin(radians) + cast_y
        new_s = np.clip(np.hypot(x, y), 0.0, 100.0)
        new_h = np.mod(np.degrees(np.arctan2(y, x)), 360.0)
        return new_h, new_s, l

    return _apply_hsl(buffer, shift)


def adjust_brightness(buffer: PixelBuffer, amount: float, mask: np.ndarray | None = None) -> PixelBuffer:
    amount = check_range("brightness", amount, BRIGHTNESS_RANGE)
    if amount == 0:
        return buffer

    def shift(h: np.ndarray, s: np.ndarray, l: np.ndarray):
        lifted = np.clip(l + amount, 0.0, 100.0)
        return h, s, lifted if mask is None else np.where(mask, lifted, l)

    return _apply_hsl(buffer, shift)


def adjust_exposure(buffer: PixelBuffer, stops: float) -> PixelBuffer:
    stops = check_range("exposure", stops, EXPOSURE_RANGE)
    if stops == 0:
        return buffer
    gain = 2.0**stops
    return _apply_hsl(buffer, lambda h, s, l: (h, s, np.clip(l * gain, 0.0, 100.0)))


def adjust_contrast(buffer: PixelBuffer, factor: float) -> PixelBuffer:
    factor = check_range("contrast", factor, FACTOR_RANGE)
    if factor == 1.0:
        return buffer
    return _apply_hsl(buffer, lambda h, s, l: (h, s, np.clip(50.0 + (l - 50.0) * factor, 0.0, 100.0)))


def adjust_saturation(buffer: PixelBuffer, factor: float, mask: np.ndarray | None = None) -> PixelBuffer:
    factor = check_range("saturation", factor, FACTOR_RANGE)
    if factor == 1.0:
        return buffer

    def scale(h: np.ndarray, s: np.ndarray, l: np.ndarray):
        scaled = np.clip(s * factor, 0.0, 100.0)
        return h, scaled if mask is None else np.where(mask, scaled, s), l

    return _apply_hsl(buffer, scale)


def recover_shadows(buffer: PixelBuffer, amount: float, threshold: float = 35.0) -> PixelBuffer:
    """Lift lightness below ``threshold``; the lift fades to zero at the threshold.

    Multiplicative, so pure black stays black and the curve stays monotone.
    """
    amount = check_range("shadows", amount, AMOUNT_RANGE)
    threshold = check_range("shadow_threshold", threshold, THRESHOLD_RANGE)
    if amount == 0 or threshold == 0:
        return buffer

    def lift(h: np.ndarray, s: np.ndarray, l: np.ndarray):
        weight = np.clip((threshold - l) / threshold, 0.0, 1.0)
        return h, s, np.where(l < threshold, l * (1.0 + amount * weight), l)

    return _apply_hsl(buffer, lift)


def recover_highlights(buffer: PixelBuffer, amount: float, threshold: float = 70.0) -> PixelBuffer:
    """Pull lightness above ``threshold`` down, brightest pixels the most."""
    amount = check_range("highlights", amount, AMOUNT_RANGE)
    threshold = check_range("highlight_threshold", threshold, THRESHOLD_RANGE)
    if amount == 0 or threshold == 100:
        return buffer
    span = 100.0 - threshold

    def pull(h: np.ndarray, s: np.ndarray, l: np.ndarray):
        excess = np.clip(l - threshold, 0.0, None)
        return h, s, np.where(l > threshold, l - 0.5 * amount * excess * excess / span, l)

    return _apply_hsl(buffer, pull)


def lift_midtones(buffer: PixelBuffer, amount: float) -> PixelBuffer:
    """Parabolic lightness lift that is zero at black and white."""
    amount = check_range("midtone_lift", amount, AMOUNT_RANGE)
    if amount == 0:
        return buffer
    return _apply_hsl(buffer, lambda h, s, l: (h, s, l + amount * l * (100.0 - l) / 100.0))


def scale_channels(buffer: PixelBuffer, gains: tuple[float, float, float]) -> PixelBuffer:
    for name, gain in zip(("red_gain", "green_gain", "blue_gain"), gains):
        check_range(name, gain, GAIN_RANGE)
    scaled = buffer.pixels.astype(np.float32) * np.asarray(gains, dtype=np.float32)
    buffer.pixels[...] = np.clip(np.rint(scaled), 0, 255).astype(np.uint8)
    return buffer


def scale_pixels(buffer: PixelBuffer, factor: np.ndarray | float) -> PixelBuffer:
    """Scale all three channels by the same (per-pixel) factor, keeping hue."""
    factor_arr = np.asarray(factor, dtype=np.float32)
    if factor_arr.size and (factor_arr.min() < GAIN_RANGE[0] or factor_arr.max() > GAIN_RANGE[1]):
        bad = float(factor_arr.min() if factor_arr.min() < GAIN_RANGE[0] else factor_arr.max())
        raise ParameterOutOfRange("pixel_gain", bad, *GAIN_RANGE)
    if factor_arr.ndim == 2:
        factor_arr = factor_arr[..., None]
    scaled = buffer.pixels.astype(np.float32) * factor_arr
    buffer.pixels[...] = np.clip(np.rint(scaled), 0, 255).astype(np.uint8)
    return buffer
