"""
Local package for the worker cluster.

This package holds the cluster configuration, the supervisor that runs in the
master process and the entry point that runs inside each worker process.
"""

from .config import ClusterConfiguration

__all__ = ["ClusterConfiguration"]
