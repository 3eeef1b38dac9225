"""
Background task management for grade sync runs.
"""

from .grade_sync_tasks import GradeSyncTaskManager

__all__ = [
    "GradeSyncTaskManager"
]
