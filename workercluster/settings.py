"""
This module contains the default configuration settings for the worker cluster.
Every value can be overridden through the environment (or a .env file), and
explicit WorkerCluster constructor arguments take precedence over both.
"""

import os
import pathlib
import tempfile
import multiprocessing
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Pool Settings ---
# 0 (or unset) means one worker per logical core.
CLUSTER_WORKERS = int(os.getenv("CLUSTER_WORKERS", "0")) or multiprocessing.cpu_count()
CLUSTER_AUTO_RESTART = _env_flag("CLUSTER_AUTO_RESTART")
CLUSTER_AUTO_RESTART_LIMIT = int(os.getenv("CLUSTER_AUTO_RESTART_LIMIT", "3"))

#* --- State File ---
CLUSTER_STATE_PATH = pathlib.Path(
    os.getenv("CLUSTER_STATE_PATH", str(pathlib.Path(tempfile.gettempdir()) / "workercluster" / "data.json"))
)

#* --- Shared Listening Endpoint ---
# No socket is bound by the supervisor unless a port is configured.
CLUSTER_BIND_HOST = os.getenv("CLUSTER_BIND_HOST", "127.0.0.1")
CLUSTER_BIND_PORT = int(os.getenv("CLUSTER_BIND_PORT", "0")) or None
LISTEN_BACKLOG = 128

#* --- Supervisor Settings ---
EVENT_POLL_INTERVAL = float(os.getenv("EVENT_POLL_INTERVAL", "0.5"))  # seconds
# Unset means workers are never force-stopped after a 'quit' broadcast.
GRACEFUL_SHUTDOWN_TIMEOUT = float(os.getenv("GRACEFUL_SHUTDOWN_TIMEOUT", "0")) or None
MASTER_PROCESS_TITLE = "WorkerCluster - Master"
WORKER_PROCESS_TITLE = "WorkerCluster - Worker {slot_id}"

#* --- Diagnostics ---
HEALTHCHECK_PATH = "/cluster/healthcheck"
STATS_PATH = "/cluster/stats"
HEALTHCHECK_BODY = "Worker cluster is running...!"

#* --- Logging ---
LOG_BUFFER_FLUSH_INTERVAL = 10
LOKI_ENABLED = _env_flag("LOKI_ENABLED")
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
