"""Services package for the Beefy peer: checkpoints, inactivity and recovery."""

from .checkpoint_service import CheckpointService
from .recovery_service import RecoveryService, RecoveryResult
from .watchdog import InactivityWatchdog

__all__ = [
    "CheckpointService",
    "InactivityWatchdog",
    "RecoveryService",
    "RecoveryResult",
]
