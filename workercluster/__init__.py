"""
workercluster: supervise a fixed-size pool of worker processes sharing one
listening socket, with bounded auto-restart, a persisted status snapshot,
diagnostics routes and a cooperative shutdown.
"""

from .cluster import WorkerCluster
from .local import ClusterConfiguration
from .local.worker_entry import WorkerContext

__all__ = ["WorkerCluster", "ClusterConfiguration", "WorkerContext"]
