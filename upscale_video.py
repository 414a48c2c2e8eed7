#!/usr/bin/env python3
"""
Video upscaler pipeline (Real-ESRGAN x4, NVENC re-encode capped to 1440p).

This script probes the input, extracts audio and frames, upscales every frame,
and rebuilds the final video at the original frame rate.
"""

from __future__ import annotations

import argparse
import functools
import math
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from tqdm import tqdm

from cli import (
    DEFAULT_FRAMERATE_TEXT,
    DEFAULT_OTLP_ENDPOINT,
    ENCODER_PRESET,
    GPU_ID,
    MAX_OUTPUT_HEIGHT,
    MAX_OUTPUT_WIDTH,
    PIXEL_FORMAT,
    UPSCALE_FACTOR,
    UPSCALE_MODEL,
    VIDEO_ENCODER,
    parse_args,
    resolve_io_paths,
)
from failures import (
    AssemblyFailure,
    ExtractionFailure,
    ProbeFailure,
    UpscaleFailure,
    WorkspaceFailure,
)
from toolchain import (
    Toolchain,
    progress_write,
    require_nvidia_gpu,
    resolve_toolchain,
    run_subprocess,
)

tracer = None


def init_tracing(endpoint: str = DEFAULT_OTLP_ENDPOINT) -> None:
    """Configure OpenTelemetry tracer to export spans to an OTLP/HTTP endpoint."""
    global tracer
    if tracer is not None:
        return

    resource = Resource.create({"service.name": "icecale"})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def _traced(func):
    """Decorator that wraps a function call in a tracing span if tracing is enabled."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if tracer is not None:
            with tracer.start_as_current_span(func.__name__):
                return func(*args, **kwargs)
        return func(*args, **kwargs)

    return wrapper


PROBE_PLACEHOLDER = "N/A"
PROBE_FIELDS = (
    "width",
    "height",
    "nb_read_frames",
    "nb_frames",
    "avg_frame_rate",
    "duration",
)

FRAME_PATTERN = "frame_%08d.png"
RAW_FRAMES_DIRNAME = "frames_raw"
UPSCALED_FRAMES_DIRNAME = "frames_upscaled"
AUDIO_FILENAME = "audio.mka"

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class VideoMetadata:
    width: int
    height: int
    fps: float
    # Raw rational text (e.g. 30000/1001); reassembly uses this, not `fps`.
    fps_text: str
    duration_seconds: float
    total_frames: int


@dataclass(frozen=True)
class WorkspaceLayout:
    """Per-run directory tree; stages receive it explicitly."""

    root: Path

    @property
    def raw_frames_dir(self) -> Path:
        return self.root / RAW_FRAMES_DIRNAME

    @property
    def upscaled_frames_dir(self) -> Path:
        return self.root / UPSCALED_FRAMES_DIRNAME

    @property
    def audio_file(self) -> Path:
        return self.root / AUDIO_FILENAME

    def clear(self) -> None:
        """Remove artifacts a previous run left in a reused workspace."""
        try:
            for directory in (self.raw_frames_dir, self.upscaled_frames_dir):
                if directory.exists():
                    shutil.rmtree(directory)
            self.audio_file.unlink(missing_ok=True)
        except OSError as exc:
            raise WorkspaceFailure(f"Unable to clear workspace {self.root}: {exc}") from exc


@dataclass(frozen=True)
class PipelineContext:
    toolchain: Toolchain
    input_video: Path
    output_video: Path
    workspace: WorkspaceLayout
    metadata: Optional[VideoMetadata] = None
    has_audio: bool = False


@dataclass(frozen=True)
class Stage:
    name: str
    banner: str
    run: Callable[[PipelineContext], PipelineContext]


# ── Metadata probing ──────────────────────────────────────────────────────────


def safe_parse_int(token: str) -> int:
    token = token.strip()
    if not token or token == PROBE_PLACEHOLDER:
        return -1
    return int(token)


def safe_parse_float(token: str) -> float:
    token = token.strip()
    if not token or token == PROBE_PLACEHOLDER:
        return 0.0
    return float(token)


def parse_frame_rate(value: str) -> float:
    """Parse ffprobe framerate strings like 30000/1001; 0/0 yields 0.0."""
    value = value.strip()
    if not value or value == PROBE_PLACEHOLDER:
        return 0.0

    if "/" in value:
        num, den = value.split("/", maxsplit=1)
        denominator = float(den)
        if denominator == 0:
            return 0.0
        return float(num) / denominator
    return float(value)


def reconcile_total_frames(
    nb_read_frames: int,
    nb_frames: int,
    duration_seconds: float,
    fps: float,
) -> int:
    """Pick the most trustworthy frame count: decoded, container, then duration * fps."""
    if nb_read_frames > 0:
        return nb_read_frames
    if nb_frames > 0:
        return nb_frames
    if duration_seconds > 0 and fps > 0:
        return int(math.floor(duration_seconds * fps + 0.5))
    return 0


def _split_tokens(line: str) -> list[str]:
    return [token.strip() for token in line.split(",")]


def _keyed_tokens(line: str) -> dict[str, str]:
    return dict(token.split("=", maxsplit=1) for token in _split_tokens(line) if "=" in token)


def split_probe_record(output: str) -> list[str]:
    """Return the stream record's tokens in PROBE_FIELDS order.

    ffprobe prints `key=value` tokens (csv with nk=0) in its own field order,
    so keyed tokens are reordered by name. stderr is merged into the output,
    so decoder warnings may precede the record; the first line carrying every
    field wins. Unkeyed records are taken positionally from the first line.
    """
    lines = [ln.strip() for ln in output.splitlines() if ln.strip()]

    for line in lines:
        keyed = _keyed_tokens(line)
        if all(field in keyed for field in PROBE_FIELDS):
            return [keyed[field] for field in PROBE_FIELDS]

    if any(_keyed_tokens(line) for line in lines):
        raise ProbeFailure(
            f"Unexpected ffprobe output (no record with {', '.join(PROBE_FIELDS)}).",
            output=output,
        )

    tokens = _split_tokens(lines[0]) if lines else []
    if len(tokens) < len(PROBE_FIELDS):
        raise ProbeFailure("Unexpected ffprobe output.", output=output)
    return tokens[: len(PROBE_FIELDS)]


def parse_probe_output(output: str) -> VideoMetadata:
    tokens = split_probe_record(output)
    try:
        width = safe_parse_int(tokens[0])
        height = safe_parse_int(tokens[1])
        nb_read_frames = safe_parse_int(tokens[2])
        nb_frames = safe_parse_int(tokens[3])
        fps_text = tokens[4].strip()
        fps = parse_frame_rate(fps_text)
        duration_seconds = safe_parse_float(tokens[5])
    except ValueError as exc:
        raise ProbeFailure(f"Failed to parse ffprobe output: {exc}", output=output) from exc

    if fps_text == PROBE_PLACEHOLDER:
        fps_text = ""

    return VideoMetadata(
        width=width,
        height=height,
        fps=fps,
        fps_text=fps_text,
        duration_seconds=duration_seconds,
        total_frames=reconcile_total_frames(nb_read_frames, nb_frames, duration_seconds, fps),
    )


def probe_video(ffprobe_bin: str, input_video: Path) -> VideoMetadata:
    """Read the first video stream's geometry, rate and frame count with ffprobe."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-count_frames",
        "-show_entries",
        "stream=" + ",".join(PROBE_FIELDS),
        "-of",
        "csv=p=0:nk=0",
        str(input_video),
    ]
    result = run_subprocess(cmd)
    if not result.ok:
        raise ProbeFailure("Failed to probe video metadata.", output=result.combined_output)
    return parse_probe_output(result.combined_output)


# ── Workspace ─────────────────────────────────────────────────────────────────


def ensure_directory(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise WorkspaceFailure(f"Unable to create directory {path}: {exc}") from exc


def prepare_workspace(work_dir_arg: Optional[str], keep_temp: bool) -> tuple[Path, bool]:
    """
    Prepare workspace root and determine whether cleanup should run at exit.

    An explicit `work_dir_arg` is always kept; a fresh temp directory is
    removed unless `keep_temp` is set.
    """
    if work_dir_arg:
        workspace_root = Path(work_dir_arg).expanduser().resolve()
        ensure_directory(workspace_root)
        return workspace_root, False

    try:
        workspace_root = Path(tempfile.mkdtemp(prefix="icecale_"))
    except OSError as exc:
        raise WorkspaceFailure(f"Unable to create temporary workspace: {exc}") from exc
    return workspace_root, not keep_temp


# ── Extraction ────────────────────────────────────────────────────────────────


def extract_audio(ffmpeg_bin: str, input_video: Path, output_path: Path) -> bool:
    """Stream-copy the first audio track; a missing track is not an error."""
    cmd = [
        ffmpeg_bin,
        "-y",
        "-i",
        str(input_video),
        "-vn",
        "-map",
        "0:a:0",
        "-c:a",
        "copy",
        str(output_path),
        "-hide_banner",
        "-loglevel",
        "warning",
    ]
    result = run_subprocess(cmd)
    if not result.ok:
        output_path.unlink(missing_ok=True)
        progress_write("No audio track was extracted (audio will be omitted in the final render).")
        return False

    has_audio = output_path.is_file() and output_path.stat().st_size > 0
    if has_audio:
        progress_write(f"Audio extracted to {output_path}")
    else:
        progress_write("Audio extraction produced no data (audio will be omitted in the final render).")
    return has_audio


def extract_frames(ffmpeg_bin: str, input_video: Path, output_dir: Path) -> None:
    """Decode every frame exactly once into frame_00000001.png, frame_00000002.png, ..."""
    ensure_directory(output_dir)
    cmd = [
        ffmpeg_bin,
        "-y",
        "-i",
        str(input_video),
        "-fps_mode",
        "passthrough",
        "-start_number",
        "1",
        str(output_dir / FRAME_PATTERN),
        "-hide_banner",
        "-loglevel",
        "warning",
    ]
    result = run_subprocess(cmd)
    if not result.ok:
        raise ExtractionFailure("Failed to extract frames.", output=result.combined_output)


# ── Upscaling ─────────────────────────────────────────────────────────────────


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    model_name: str = UPSCALE_MODEL,
    scale_factor: int = UPSCALE_FACTOR,
    gpu_id: int = GPU_ID,
) -> list[str]:
    return [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-n",
        model_name,
        "-s",
        str(scale_factor),
        "-g",
        str(gpu_id),
    ]


def list_frames(frames_dir: Path) -> list[Path]:
    """Regular files in name order; zero-padded names make this numeric order."""
    if not frames_dir.is_dir():
        return []
    return sorted((entry for entry in frames_dir.iterdir() if entry.is_file()), key=lambda p: p.name)


def upscale_frames(
    realesrgan_binary: Path,
    input_dir: Path,
    output_dir: Path,
    expected_total: int,
    *,
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    """Upscale each frame into the same-named file in output_dir, stopping at the first failure."""
    ensure_directory(output_dir)

    frames = list_frames(input_dir)
    if not frames:
        raise UpscaleFailure("No frames found to upscale.")

    # A zero or garbage probe count must not make progress meaningless.
    total = expected_total if expected_total > 0 else len(frames)
    completed = 0

    with tqdm(total=total, desc="Upscaling frames", unit="frame") as progress_bar:
        for frame in frames:
            cmd = build_realesrgan_command(realesrgan_binary, frame, output_dir / frame.name)
            result = run_subprocess(cmd)
            if not result.ok:
                raise UpscaleFailure(
                    f"Real-ESRGAN failed on frame {frame}",
                    output=result.combined_output,
                    frame=frame,
                )

            completed += 1
            progress_bar.update(1)
            if on_progress is not None:
                on_progress(completed, total)


# ── Assembly ──────────────────────────────────────────────────────────────────


def build_scale_filter() -> str:
    """Cap to the output box keeping aspect, then floor both sides to even for yuv420p."""
    return (
        f"scale='min({MAX_OUTPUT_WIDTH},iw)':'min({MAX_OUTPUT_HEIGHT},ih)'"
        ":force_original_aspect_ratio=decrease"
        ",scale=trunc(iw/2)*2:trunc(ih/2)*2"
    )


def _rescale_rounded(value: int, numerator: int, denominator: int) -> int:
    return (value * numerator + denominator // 2) // denominator


def capped_output_size(width: int, height: int) -> tuple[int, int]:
    """Dimensions ffmpeg produces from build_scale_filter() for a width x height input."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid frame size: {width}x{height}")

    box_width = min(MAX_OUTPUT_WIDTH, width)
    box_height = min(MAX_OUTPUT_HEIGHT, height)
    scaled_width = min(box_width, _rescale_rounded(box_height, width, height))
    scaled_height = min(box_height, _rescale_rounded(box_width, height, width))
    return scaled_width // 2 * 2, scaled_height // 2 * 2


def build_assembly_command(
    ffmpeg_bin: str,
    frames_dir: Path,
    audio_file: Path,
    output_video: Path,
    fps_text: str,
    has_audio: bool,
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-y",
        "-framerate",
        fps_text or DEFAULT_FRAMERATE_TEXT,
        "-i",
        str(frames_dir / FRAME_PATTERN),
    ]

    if has_audio:
        cmd.extend(["-i", str(audio_file), "-map", "0:v:0", "-map", "1:a:0"])
    else:
        cmd.extend(["-map", "0:v:0"])

    cmd.extend(
        [
            "-vf",
            build_scale_filter(),
            "-c:v",
            VIDEO_ENCODER,
            "-preset",
            ENCODER_PRESET,
            "-pix_fmt",
            PIXEL_FORMAT,
        ]
    )

    if has_audio:
        cmd.extend(["-c:a", "copy"])

    cmd.extend([str(output_video), "-hide_banner", "-loglevel", "warning"])
    return cmd


def assemble_video(
    ffmpeg_bin: str,
    frames_dir: Path,
    audio_file: Path,
    output_video: Path,
    fps_text: str,
    has_audio: bool,
) -> None:
    cmd = build_assembly_command(ffmpeg_bin, frames_dir, audio_file, output_video, fps_text, has_audio)
    result = run_subprocess(cmd)
    if not result.ok:
        raise AssemblyFailure("Failed to assemble video.", output=result.combined_output)


# ── Stages ────────────────────────────────────────────────────────────────────


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def print_metadata_summary(metadata: VideoMetadata) -> None:
    fps_label = metadata.fps_text or f"{metadata.fps:.3f}"
    print(
        f"  Resolution: {metadata.width}x{metadata.height}, "
        f"FPS: {fps_label}, Frames: {metadata.total_frames}"
    )
    if metadata.duration_seconds > 0:
        print(f"  Duration:   {metadata.duration_seconds:.1f}s")
    if metadata.width > 0 and metadata.height > 0:
        out_width, out_height = capped_output_size(
            metadata.width * UPSCALE_FACTOR,
            metadata.height * UPSCALE_FACTOR,
        )
        print(f"  Output:     {out_width}x{out_height}")


def probe_stage(ctx: PipelineContext) -> PipelineContext:
    metadata = probe_video(ctx.toolchain.ffprobe, ctx.input_video)
    print_metadata_summary(metadata)
    return replace(ctx, metadata=metadata)


def extract_audio_stage(ctx: PipelineContext) -> PipelineContext:
    has_audio = extract_audio(ctx.toolchain.ffmpeg, ctx.input_video, ctx.workspace.audio_file)
    return replace(ctx, has_audio=has_audio)


def extract_frames_stage(ctx: PipelineContext) -> PipelineContext:
    extract_frames(ctx.toolchain.ffmpeg, ctx.input_video, ctx.workspace.raw_frames_dir)
    return ctx


def upscale_stage(ctx: PipelineContext) -> PipelineContext:
    expected_total = ctx.metadata.total_frames if ctx.metadata else 0
    upscale_frames(
        ctx.toolchain.realesrgan_binary,
        ctx.workspace.raw_frames_dir,
        ctx.workspace.upscaled_frames_dir,
        expected_total,
    )
    return ctx


def assemble_stage(ctx: PipelineContext) -> PipelineContext:
    fps_text = ctx.metadata.fps_text if ctx.metadata else ""
    assemble_video(
        ctx.toolchain.ffmpeg,
        ctx.workspace.upscaled_frames_dir,
        ctx.workspace.audio_file,
        ctx.output_video,
        fps_text,
        ctx.has_audio,
    )
    return ctx


PIPELINE_STAGES: tuple[Stage, ...] = (
    Stage("probe", "Probing input video...", probe_stage),
    Stage("extract_audio", "Extracting audio (if present)...", extract_audio_stage),
    Stage("extract_frames", "Extracting frames...", extract_frames_stage),
    Stage(
        "upscale",
        f"Upscaling with Real-ESRGAN (x{UPSCALE_FACTOR}, capped to {MAX_OUTPUT_HEIGHT}p output)...",
        upscale_stage,
    ),
    Stage(
        "assemble",
        f"Assembling final video with resolution capped at {MAX_OUTPUT_HEIGHT}p...",
        assemble_stage,
    ),
)


def run_stage(stage: Stage, ctx: PipelineContext) -> PipelineContext:
    if tracer is None:
        return stage.run(ctx)
    with tracer.start_as_current_span(stage.name):
        return stage.run(ctx)


def run_stages(
    ctx: PipelineContext,
    stages: Sequence[Stage] = PIPELINE_STAGES,
) -> PipelineContext:
    """Run stages in order; the first failure propagates and ends the run."""
    for stage in stages:
        print(stage.banner)
        step_start = time.time()
        ctx = run_stage(stage, ctx)
        print(f"  Time: {format_time(time.time() - step_start)}\n")
    return ctx


# ── Entry points ──────────────────────────────────────────────────────────────


@_traced
def run_pipeline(args: argparse.Namespace) -> int:
    input_video, output_video = resolve_io_paths(args.input_video, args.output_video)

    print("Verifying environment...")
    if args.skip_gpu_check:
        print("  GPU check skipped.")
    else:
        print(f"  Detected NVIDIA GPU: {require_nvidia_gpu()}")
    toolchain = resolve_toolchain(args)
    ensure_directory(output_video.parent)

    workspace_root, should_cleanup_workspace = prepare_workspace(args.work_dir, args.keep_temp)
    layout = WorkspaceLayout(workspace_root)

    print("\n" + "=" * 60)
    print("Video Upscaler - Real-ESRGAN")
    print("=" * 60)
    print(f"Input:     {input_video}")
    print(f"Output:    {output_video}")
    print(f"Model:     {UPSCALE_MODEL} (x{UPSCALE_FACTOR}, GPU {GPU_ID})")
    print(f"Encoder:   {VIDEO_ENCODER} (preset {ENCODER_PRESET})")
    print(f"Workspace: {workspace_root}")
    print("=" * 60 + "\n")

    total_start = time.time()
    try:
        layout.clear()
        ctx = PipelineContext(
            toolchain=toolchain,
            input_video=input_video,
            output_video=output_video,
            workspace=layout,
        )
        run_stages(ctx)

        print("=" * 60)
        print("Complete!")
        print(f"Total time: {format_time(time.time() - total_start)}")
        print(f"Upscaled video saved to: {output_video}")
        if output_video.exists():
            output_size_mb = output_video.stat().st_size / (1024 * 1024)
            print(f"Output size: {output_size_mb:.1f} MB")
        print("=" * 60 + "\n")
        return 0
    finally:
        if should_cleanup_workspace:
            shutil.rmtree(workspace_root, ignore_errors=True)
        else:
            print(f"Workspace kept at: {workspace_root}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        # argparse reports usage errors with status 2; every error here is 1.
        return 1 if exc.code else 0

    if args.trace:
        init_tracing(args.otlp_endpoint)

    try:
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
