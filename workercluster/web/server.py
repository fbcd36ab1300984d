import asyncio
import logging
from typing import Any
from hypercorn.config import Config
from hypercorn.asyncio import serve as hypercorn_serve
from starlette.types import ASGIApp
from workercluster.local.worker_entry import QUIT_MESSAGE, WorkerContext

log = logging.getLogger(__name__)


def build_config(worker: WorkerContext) -> Config:
    """
    Builds a Hypercorn config that serves on the socket the worker inherited
    from the master instead of binding its own.

    :param worker: The worker's own handle.
    :return: A Hypercorn Config bound to the shared descriptor.
    :raises RuntimeError: If the cluster was started without a bind port.
    """
    if worker.socket is None:
        raise RuntimeError("No shared listening socket. Configure a bind port for the cluster.")

    config = Config()
    config.bind = [f"fd://{worker.socket.fileno()}"]
    # Directs Hypercorn's own logs to stdout/stderr.
    config.accesslog = "-"
    config.errorlog = "-"
    config.loglevel = "info"
    return config


async def _serve(app: ASGIApp, worker: WorkerContext) -> None:
    loop = asyncio.get_running_loop()
    quit_event = asyncio.Event()

    def on_message(message: Any) -> None:
        if message == QUIT_MESSAGE:
            loop.call_soon_threadsafe(quit_event.set)

    worker.on_message(on_message)
    if worker.quit_requested.is_set():
        quit_event.set()

    log.info(f"Worker {worker.slot_id} (PID {worker.pid}) serving on the shared socket.")
    await hypercorn_serve(app, build_config(worker), shutdown_trigger=quit_event.wait)
    log.info(f"Worker {worker.slot_id} finished its in-flight requests, stopping.")


def serve(app: ASGIApp, worker: WorkerContext) -> None:
    """
    Runs an ASGI app in this worker until the master sends 'quit', then lets
    Hypercorn drain in-flight requests and returns.

    Meant to be called from the worker callback passed to WorkerCluster.run.
    """
    asyncio.run(_serve(app, worker))
    worker.disconnect()
