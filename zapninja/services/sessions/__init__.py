"""
Session process management.

PortAllocator hands out exclusive ports; ProcessSupervisor spawns and
supervises one OS process per session on top of it.
"""

from zapninja.services.sessions.port_allocator import PortAllocator, PortConflict, PortExhausted
from zapninja.services.sessions.process_supervisor import (
    LaunchTimeout,
    ProcessSpawnFailure,
    ProcessSupervisor,
    UngracefulExit,
)

__all__ = [
    "LaunchTimeout",
    "PortAllocator",
    "PortConflict",
    "PortExhausted",
    "ProcessSpawnFailure",
    "ProcessSupervisor",
    "UngracefulExit",
]
