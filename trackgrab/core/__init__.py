"""
Core application engine.

The `Pipeline` sequences the stages of a single run as an explicit state
machine; the `RunRegistry` owns every live run, its working directory and
its progress channel.
"""

from .pipeline import Pipeline, PipelineRun
from .progress import ProgressBroadcaster, ProgressChannel
from .run_registry import Artifact, ArtifactNotReady, RunNotFound, RunRegistry

__all__ = [
    "Artifact",
    "ArtifactNotReady",
    "Pipeline",
    "PipelineRun",
    "ProgressBroadcaster",
    "ProgressChannel",
    "RunNotFound",
    "RunRegistry",
]
