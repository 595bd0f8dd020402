"""Interactive terminal sessions against sandboxes.

A process-wide ``TerminalSessionManager`` owns every open session. Each
session wraps a transport: SSH when the sandbox exposes it, otherwise a
line-oriented shell over the control plane's command API.
"""

from .manager import TerminalSession, TerminalSessionManager
from .transport import (
    ControlPlaneTransport,
    OutputBuffer,
    SSHTransport,
    TerminalTransport,
    build_transport,
)

__all__ = [
    "ControlPlaneTransport",
    "OutputBuffer",
    "SSHTransport",
    "TerminalSession",
    "TerminalSessionManager",
    "TerminalTransport",
    "build_transport",
]
