#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import sys
import time
from io import BytesIO
from pathlib import Path

import numpy as np
from PIL import Image

from estate_photos.config import load_settings
from estate_photos.logging_config import setup_logging
from estate_photos.services.batch import BatchOrchestrator
from estate_photos.services.collaborators import InMemoryImageStore
from estate_photos.services.types import ImageSubmission


def build_frame(width: int, height: int, tick: int) -> Image.Image:
    """Generate a deterministic synthetic room: bright upper wall, darker floor, a window."""
    x = np.linspace(0.0, 1.0, width, dtype=np.float32)
    y = np.linspace(0.0, 1.0, height, dtype=np.float32)
    xx, yy = np.meshgrid(x, y)

    shade = 0.25 + 0.5 * (1.0 - yy) + 0.1 * np.sin(xx * np.pi * (2 + tick % 3))
    r = shade * 1.05
    g = shade
    b = shade * 0.85
    arr = np.stack([r, g, b], axis=-1)

    window = (xx > 0.6) & (xx < 0.85) & (yy > 0.15) & (yy < 0.5)
    arr[window] = 0.97

    arr_uint8 = np.clip(arr * 255.0, 0, 255).astype(np.uint8)
    return Image.fromarray(arr_uint8)


def encode(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="JPEG", quality=92)
    return buffer.getvalue()


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(
        {
            "limits": {"max_concurrent_processing": args.concurrency},
            "output": {"max_edge": args.max_edge},
        }
    )
    store = InMemoryImageStore()
    orchestrator = BatchOrchestrator(settings=settings, image_store=store)

    images = [
        ImageSubmission(data=encode(build_frame(args.width, args.height, index)), image_id=f"room-{index}")
        for index in range(args.images)
    ]
    if args.with_failures:
        images.append(ImageSubmission(data=encode(build_frame(800, 600, 0)), image_id="too-small"))
        images.append(
            ImageSubmission(data=encode(Image.new("RGB", (args.width, args.height))), image_id="black")
        )

    start = time.perf_counter()
    submitted = await orchestrator.submit(
        args.listing, images, region=args.region, scene_type=args.scene
    )
    snapshot = await orchestrator.wait(submitted.batch_id, timeout=args.timeout_s)
    elapsed_ms = (time.perf_counter() - start) * 1000.0

    for task in snapshot.tasks:
        score = task.verdict["score"] if task.verdict else None
        print(
            f"image={task.image_id} status={task.status.value} stage={task.stage.value} "
            f"score={score} reason={task.reason}"
        )
    print(f"batch={snapshot.batch_id} status={snapshot.status.value} elapsed_ms={elapsed_ms:.2f}")
    print(f"quality report: {snapshot.quality_report}")

    if args.save:
        output_dir = Path(args.save).expanduser().resolve()
        output_dir.mkdir(parents=True, exist_ok=True)
        for key, (data, _) in store.objects.items():
            path = output_dir / key.replace("/", "_")
            path.write_bytes(data)
            print(f"saved output: {path}")

    expected = args.expect or ("partially_completed" if args.with_failures else "completed")
    if snapshot.status.value != expected:
        print(f"ERROR: batch ended {snapshot.status.value}, expected {expected}", file=sys.stderr)
        return 2
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for the listing batch orchestrator")
    parser.add_argument("--images", type=int, default=4, help="Number of synthetic listing photos")
    parser.add_argument("--width", type=int, default=1600)
    parser.add_argument("--height", type=int, default=1200)
    parser.add_argument("--listing", type=str, default="smoke-listing")
    parser.add_argument("--region", choices=["default", "thailand", "cambodia", "uae"], default="default")
    parser.add_argument("--scene", choices=["interior", "exterior", "twilight"], default="interior")
    parser.add_argument("--concurrency", type=int, default=2)
    parser.add_argument("--max-edge", type=int, default=1024)
    parser.add_argument("--timeout-s", type=float, default=120.0)
    parser.add_argument(
        "--with-failures",
        action="store_true",
        help="Add an undersized and an all-black image to the batch",
    )
    parser.add_argument("--expect", type=str, default="", help="Expected final batch status")
    parser.add_argument("--save", type=str, default="", help="Optional directory for enhanced outputs")
    args = parser.parse_args()

    setup_logging()
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
