"""Core utilities: relation model, logging, metrics and detached tasks."""

from .logging import alog_event, ensure_runtime_dirs, log_event
from .relation import (
    ALLOWED,
    DENIED,
    Allowed,
    AllowedInChannels,
    CommandScope,
    Denied,
    Permission,
    Relation,
)
from .tasks import DetachedTasks

__all__ = [
    "ALLOWED",
    "DENIED",
    "Allowed",
    "AllowedInChannels",
    "CommandScope",
    "Denied",
    "DetachedTasks",
    "Permission",
    "Relation",
    "alog_event",
    "ensure_runtime_dirs",
    "log_event",
]
