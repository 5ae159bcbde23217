"""
Media Processing Layer.

This package is responsible for all media operations: supervising the
external extractor and muxer, fetching remote files, and checking the
produced file's tags.
"""

from .downloader import Downloader
from .extractor import AcquisitionEngine
from .integrity import FileIntegrityChecker
from .muxer import TaggingStage
from .process import ProcessResult, run_process
from .resolver import MetadataResolver

__all__ = [
    "AcquisitionEngine",
    "Downloader",
    "FileIntegrityChecker",
    "MetadataResolver",
    "ProcessResult",
    "TaggingStage",
    "run_process",
]
