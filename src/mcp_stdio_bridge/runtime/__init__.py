"""Runtime module for the stdio transport.

This module provides child process supervision, line framing of the child's
output and id-based correlation of JSON-RPC requests and responses.
"""

from __future__ import annotations

from .correlator import PendingRequest, RequestCorrelator
from .framing import DiagnosticLog, FrameDecoder
from .supervisor import ChildProcess, ChildState, ProcessSpec, ProcessSupervisor

__all__ = [
    "ChildProcess",
    "ChildState",
    "DiagnosticLog",
    "FrameDecoder",
    "PendingRequest",
    "ProcessSpec",
    "ProcessSupervisor",
    "RequestCorrelator",
]
