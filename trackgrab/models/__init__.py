"""
Data Models Layer.

This package contains the configuration model and the value types that flow
through a pipeline run.
"""

from .config import AppConfig
from .progress import EventType, ProgressEvent, Stage
from .track import SourceReference, TrackMetadata

__all__ = [
    "AppConfig",
    "EventType",
    "ProgressEvent",
    "SourceReference",
    "Stage",
    "TrackMetadata",
]
