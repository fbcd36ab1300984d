"""
Web package for the worker cluster.

This package contains the diagnostics routes registered on a caller's
Starlette application and the helper that serves such an application from
inside a worker on the shared listening socket.
"""
from .diagnostics import DiagnosticsEndpoint

__all__ = ["DiagnosticsEndpoint"]
