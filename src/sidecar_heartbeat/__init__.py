"""
Sidecar Heartbeat - liveness monitor for backend sidecar processes.

The frontend writes bytes to a Unix socket; when it stops, the sidecar tears
itself down once and exits.
"""

from .channel import EndpointBindError, HeartbeatChannel, SidecarError
from .client import HeartbeatSender, wait_for_endpoint
from .main import SidecarService
from .shutdown import ShutdownCoordinator, ShutdownState
from .tracker import LivenessTracker, ShutdownReason

__version__ = "1.0.0"

__all__ = [
    "EndpointBindError",
    "HeartbeatChannel",
    "HeartbeatSender",
    "LivenessTracker",
    "ShutdownCoordinator",
    "ShutdownReason",
    "ShutdownState",
    "SidecarError",
    "SidecarService",
    "wait_for_endpoint",
]
