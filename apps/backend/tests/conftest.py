from __future__ import annotations

from io import BytesIO
from typing import Callable

import numpy as np
import pytest
from PIL import Image


def encode_image(image: Image.Image, fmt: str = "JPEG") -> bytes:
    buffer = BytesIO()
    if fmt == "JPEG":
        image.save(buffer, format=fmt, quality=90)
    else:
        image.save(buffer, format=fmt)
    return buffer.getvalue()


def gradient_image(width: int, height: int) -> Image.Image:
    """Warm-grey horizontal gradient spanning most of the tonal range."""
    ramp = np.linspace(30.0, 225.0, width, dtype=np.float32)
    arr = np.empty((height, width, 3), dtype=np.float32)
    arr[..., 0] = ramp * 1.02
    arr[..., 1] = ramp
    arr[..., 2] = ramp * 0.96
    return Image.fromarray(np.clip(arr, 0, 255).astype(np.uint8))


@pytest.fixture
def listing_photo() -> Callable[..., bytes]:
    def build(width: int = 1600, height: int = 1200, fmt: str = "JPEG") -> bytes:
        return encode_image(gradient_image(width, height), fmt)

    return build


@pytest.fixture
def black_photo() -> Callable[..., bytes]:
    def build(width: int = 1600, height: int = 1200) -> bytes:
        return encode_image(Image.new("RGB", (width, height)), "PNG")

    return build
