"""
trackgrab: turn a video link into a single tagged audio file.
"""

__version__ = "0.3.0"
