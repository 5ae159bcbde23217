"""
Provisioning Layer.

Ensures the external tool binaries and credential material needed by the
pipeline are present and fresh.
"""

from .credentials import CredentialStore
from .provisioner import Provisioner
from .tools import FFMPEG, YTDLP, ProvisionedTool, ToolProvisioner

__all__ = [
    "FFMPEG",
    "YTDLP",
    "CredentialStore",
    "ProvisionedTool",
    "Provisioner",
    "ToolProvisioner",
]
