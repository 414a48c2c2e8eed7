"""Failure taxonomy: one exception type per pipeline stage."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class PipelineFailure(RuntimeError):
    """Fatal pipeline error carrying the triggering tool's combined output."""

    def __init__(self, message: str, output: str = "") -> None:
        self.message = message
        self.output = output
        super().__init__(message)

    def __str__(self) -> str:
        if self.output:
            return f"{self.message}\n{self.output.rstrip()}"
        return self.message


class ProbeFailure(PipelineFailure):
    pass


class WorkspaceFailure(PipelineFailure):
    pass


class ExtractionFailure(PipelineFailure):
    pass


class UpscaleFailure(PipelineFailure):
    def __init__(self, message: str, output: str = "", frame: Optional[Path] = None) -> None:
        super().__init__(message, output)
        self.frame = frame


class AssemblyFailure(PipelineFailure):
    pass


class EnvironmentFailure(PipelineFailure):
    """Missing prerequisite tool or hardware."""
