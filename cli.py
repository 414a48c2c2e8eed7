"""CLI: argument parsing, fixed tool parameters, and path validation."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

# ── Constants ──────────────────────────────────────────────────────────────────

# Upscaler and encoder selections are fixed; they are not exposed as flags.
UPSCALE_MODEL = "realesrgan-x4plus"
UPSCALE_FACTOR = 4
GPU_ID = 0

VIDEO_ENCODER = "h264_nvenc"
ENCODER_PRESET = "p3"
PIXEL_FORMAT = "yuv420p"
MAX_OUTPUT_WIDTH = 2560
MAX_OUTPUT_HEIGHT = 1440
DEFAULT_FRAMERATE_TEXT = "30"

DEFAULT_OTLP_ENDPOINT = "http://localhost:4318/v1/traces"


# ── Functions ──────────────────────────────────────────────────────────────────


def resolve_io_paths(input_arg: str, output_arg: str) -> tuple[Path, Path]:
    """Resolve input/output paths, rejecting a missing input or an in-place overwrite."""
    input_video = Path(input_arg).expanduser().resolve()
    if not input_video.is_file():
        raise FileNotFoundError(f"Input file does not exist: {input_video}")

    output_video = Path(output_arg).expanduser().resolve()
    if output_video == input_video:
        raise ValueError("Output video path must be different from input video path.")
    return input_video, output_video


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="icecale",
        description=(
            "Upscale a video 4x with Real-ESRGAN and re-encode it with NVENC, "
            "capped to 2560x1440"
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("input_video", type=str, help="Path to input video")
    parser.add_argument("output_video", type=str, help="Path to output video")
    parser.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Workspace directory (kept after the run; default: fresh temp dir)",
    )
    parser.add_argument("--keep-temp", action="store_true", help="Keep temporary workspace")
    parser.add_argument(
        "--tools-dir",
        type=str,
        default=None,
        help="Directory searched for ffmpeg, ffprobe and realesrgan-ncnn-vulkan "
        "(default: the program's own directory, then PATH)",
    )
    parser.add_argument(
        "--skip-gpu-check",
        action="store_true",
        help="Do not require nvidia-smi to report an NVIDIA GPU",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Export OpenTelemetry spans for each pipeline stage",
    )
    parser.add_argument(
        "--otlp-endpoint",
        type=str,
        default=DEFAULT_OTLP_ENDPOINT,
        help="OTLP/HTTP trace endpoint used with --trace",
    )

    return parser.parse_args(argv)
