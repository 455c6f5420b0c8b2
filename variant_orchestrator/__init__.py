"""Sequenced, fail-fast orchestration of variant image builds."""

from .context import resolve
from .models import BuildResult, ParameterContext
from .pipeline import BuildPipeline
from .stages import SEQUENCES, Stage

__all__ = ["resolve", "BuildPipeline", "BuildResult", "ParameterContext", "SEQUENCES", "Stage"]
