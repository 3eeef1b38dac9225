from .status_updates import ConnectionManager, BroadcastStatusReporter, manager

__all__ = [
    "ConnectionManager",
    "BroadcastStatusReporter",
    "manager"
]
