"""
HTTP Layer.

This package exposes the pipeline over HTTP: run creation, per-run
progress streams and artifact download.
"""

from .server import create_app, run_server

__all__ = ["create_app", "run_server"]
