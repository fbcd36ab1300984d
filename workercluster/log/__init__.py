"""
Logging module for the worker cluster.
This module provides functionality to set up console logging and optional
shipping of log records to Grafana Loki.
"""

from .setup import setup_logging
from .handler import LokiHandler

__all__ = ["setup_logging", "LokiHandler"]
