"""WASM renderer builds for dashboards."""

from .pipeline import BuildPipeline
from .toolchain import StageResult, run_command

__all__ = ["BuildPipeline", "StageResult", "run_command"]
