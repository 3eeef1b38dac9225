from .run_state import GradeSyncRun, GradeSyncLastRun

__all__ = [
    "GradeSyncRun",
    "GradeSyncLastRun"
]
