"""
MindOps Collaboration

Approved follow connections, the collaboration task state machine and the
requester-side poller.
"""

from .connections import ConnectionManager
from .tasks import ALLOWED_TRANSITIONS, TaskEngine
from .poller import TaskPoller

__all__ = [
    "ConnectionManager",
    "ALLOWED_TRANSITIONS",
    "TaskEngine",
    "TaskPoller",
]
