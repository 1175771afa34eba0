"""Stdio relay that keeps protocol traffic and diagnostic output apart."""

from nexus_bridge.relay.process import ProtocolRelay, exit_code_for
from nexus_bridge.relay.protocol import LineBuffer, LineKind, LineVerdict, classify_line

__all__ = [
    "LineBuffer",
    "LineKind",
    "LineVerdict",
    "ProtocolRelay",
    "classify_line",
    "exit_code_for",
]
