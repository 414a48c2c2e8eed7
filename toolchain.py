"""Toolchain: binary discovery, environment checks, and the subprocess wrapper."""

from __future__ import annotations

import argparse
import os
import platform
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from tqdm import tqdm

from failures import EnvironmentFailure

FFMPEG_NAME = "ffmpeg"
FFPROBE_NAME = "ffprobe"
REALESRGAN_NAME = "realesrgan-ncnn-vulkan"


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    realesrgan_binary: Path


@dataclass(frozen=True)
class StageResult:
    exit_code: int
    combined_output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def progress_write(message: str) -> None:
    """Write a message without tearing an active progress bar."""
    tqdm.write(message)


def run_subprocess(cmd: Sequence[object]) -> StageResult:
    """Run an argv list to completion, buffering stdout and stderr together."""
    completed = subprocess.run(
        [str(part) for part in cmd],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        check=False,
    )
    return StageResult(exit_code=completed.returncode, combined_output=completed.stdout or "")


def is_windows() -> bool:
    return platform.system().lower() == "windows"


def get_default_tools_dir() -> Path:
    """Directory holding the running program; vendored tools live beside it."""
    return Path(sys.argv[0]).expanduser().resolve().parent


def is_executable(candidate: Path) -> bool:
    if not candidate.is_file():
        return False
    if is_windows():
        return True
    return os.access(candidate, os.X_OK)


def find_tool(base_dir: Path, name: str) -> Path:
    """Locate a tool next to the program, in its bin/ or third_party/ folders, or on PATH."""
    binary_name = f"{name}.exe" if is_windows() else name
    candidates = [
        base_dir / binary_name,
        base_dir / "bin" / binary_name,
        base_dir / "third_party" / name / binary_name,
        base_dir / "third_party" / "bin" / binary_name,
    ]
    for candidate in candidates:
        if is_executable(candidate):
            return candidate.resolve()

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    raise EnvironmentFailure(f"Required tool not found in project folders or PATH: {name}")


def require_command(command: Path | str, version_flag: str = "-version") -> None:
    """Fail unless the tool launches and answers its version/help flag."""
    try:
        result = run_subprocess([command, version_flag])
    except OSError as exc:
        raise EnvironmentFailure(f"Required command '{command}' could not be launched: {exc}") from exc
    if not result.ok:
        raise EnvironmentFailure(
            f"Required command '{command}' is not available.",
            output=result.combined_output,
        )


def require_launchable(command: Path | str, help_flag: str = "-h") -> None:
    """Like require_command, but tolerates tools whose help screen exits non-zero."""
    try:
        run_subprocess([command, help_flag])
    except OSError as exc:
        raise EnvironmentFailure(f"Required command '{command}' could not be launched: {exc}") from exc


def require_nvidia_gpu() -> str:
    """Return the first NVIDIA GPU name, or fail when none is visible."""
    try:
        result = run_subprocess(["nvidia-smi", "--query-gpu=name", "--format=csv,noheader"])
    except OSError as exc:
        raise EnvironmentFailure(
            "No NVIDIA GPU detected (nvidia-smi unavailable). "
            "The NVENC encoder requires an NVIDIA GPU."
        ) from exc

    lines = [line.strip() for line in result.combined_output.splitlines() if line.strip()]
    if not result.ok or not lines:
        raise EnvironmentFailure(
            "No NVIDIA GPU detected. The NVENC encoder requires an NVIDIA GPU.",
            output=result.combined_output,
        )
    return lines[0]


def resolve_toolchain(args: argparse.Namespace) -> Toolchain:
    """Locate ffmpeg, ffprobe and Real-ESRGAN and verify each one runs."""
    base_dir = (
        Path(args.tools_dir).expanduser().resolve()
        if getattr(args, "tools_dir", None)
        else get_default_tools_dir()
    )

    ffmpeg_bin = find_tool(base_dir, FFMPEG_NAME)
    ffprobe_bin = find_tool(base_dir, FFPROBE_NAME)
    realesrgan_binary = find_tool(base_dir, REALESRGAN_NAME)

    require_command(ffmpeg_bin)
    require_command(ffprobe_bin)
    require_launchable(realesrgan_binary)

    return Toolchain(
        ffmpeg=str(ffmpeg_bin),
        ffprobe=str(ffprobe_bin),
        realesrgan_binary=realesrgan_binary,
    )
