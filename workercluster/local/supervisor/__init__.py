"""
The Supervisor package.
Manages the lifecycle of the cluster's worker processes.

This package contains the central Supervisor class and its helper modules,
which together handle forking, restart decisions, state persistence and the
cooperative shutdown of the worker pool.
"""
from .events import EventChannel, EventKind, LifecycleEvent
from .models import ClusterStatus, SessionSnapshot, WorkerHandle, WorkerStatus, WorkerSummary
from .policy import RestartDecision, decide
from .registry import WorkerRegistry
from .supervisor import Supervisor

__all__ = [
    'ClusterStatus', 'EventChannel', 'EventKind', 'LifecycleEvent', 'RestartDecision',
    'SessionSnapshot', 'Supervisor', 'WorkerHandle', 'WorkerRegistry', 'WorkerStatus',
    'WorkerSummary', 'decide',
]
