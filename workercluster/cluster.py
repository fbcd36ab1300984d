import logging
import setproctitle
from pathlib import Path
from starlette.applications import Starlette
from typing import Any, Callable, List, Optional, Union
from workercluster import settings
from workercluster.local.config import ClusterConfiguration
from workercluster.local.supervisor import EventChannel, Supervisor
from workercluster.local.supervisor.process_utils import ProcessSpawner, bind_listening_socket
from workercluster.local.supervisor.supervisor import OutputListener, Spawner
from workercluster.local.worker_entry import WorkerContext, WorkerEntryPoint, current_worker
from workercluster.web import DiagnosticsEndpoint

log = logging.getLogger(__name__)

WorkerCallback = Callable[[WorkerContext], Any]


class WorkerCluster:
    """
    Public entry point: runs a pool of worker processes behind one master.

    In the master process `run` forks the workers and supervises them until
    the cluster is shut down. Inside a worker it simply invokes the callback
    with the worker's own handle.

    Example::

        cluster = WorkerCluster(workers=2, auto_restart=True, auto_restart_limit=3)
        cluster.on_output(print)
        cluster.attach_diagnostics(app)
        cluster.run(lambda worker: serve(app, worker))
    """

    def __init__(
        self,
        workers: Optional[int] = None,
        auto_restart: Optional[bool] = None,
        auto_restart_limit: Optional[int] = None,
        bind_host: Optional[str] = None,
        bind_port: Optional[int] = None,
        state_path: Optional[Union[str, Path]] = None,
    ) -> None:
        self.config = ClusterConfiguration.from_settings(
            workers=workers,
            auto_restart=auto_restart,
            auto_restart_limit=auto_restart_limit,
            bind_host=bind_host,
            bind_port=bind_port,
        )
        self.state_path = Path(state_path or settings.CLUSTER_STATE_PATH)
        self.supervisor: Optional[Supervisor] = None
        self.diagnostics: Optional[DiagnosticsEndpoint] = None
        self._listeners: List[OutputListener] = []

    def on_output(self, listener: OutputListener) -> None:
        """Subscribes to the master's timestamped status lines."""
        self._listeners.append(listener)
        if self.supervisor is not None:
            self.supervisor.add_output_listener(listener)

    def attach_diagnostics(self, app: Starlette) -> DiagnosticsEndpoint:
        """
        Registers /cluster/healthcheck and /cluster/stats on the given app and
        turns on state-file persistence in the master.
        """
        self.config = self.config.with_diagnostics_attached()
        if self.supervisor is not None:
            self.supervisor.config = self.supervisor.config.with_diagnostics_attached()
        self.diagnostics = DiagnosticsEndpoint(self.state_path)
        self.diagnostics.register(app)
        return self.diagnostics

    def start(self, callback: Optional[WorkerCallback] = None, spawner: Optional[Spawner] = None) -> Supervisor:
        """
        Forks the workers and returns the running Supervisor without blocking.

        :param callback: Called once inside every worker with its own handle.
        :param spawner: Replaces the default fork-based spawner (embedding, tests).
        """
        channel = EventChannel()
        if spawner is None:
            listen_socket = None
            if self.config.bind_port:
                listen_socket = bind_listening_socket(self.config.bind_host, self.config.bind_port)
            spawner = ProcessSpawner(channel, callback, listen_socket)

        self.supervisor = Supervisor(self.config, spawner, channel, self.state_path)
        for listener in self._listeners:
            self.supervisor.add_output_listener(listener)
        return self.supervisor.start()

    def run(self, callback: Optional[WorkerCallback] = None) -> Union[Supervisor, WorkerEntryPoint]:
        """
        Runs the role of the current process: supervise the pool in the
        master (blocking until every worker has exited), or invoke the
        callback in a worker.
        """
        worker = current_worker()
        if worker is not None:
            if worker.entry_point is None:
                worker.entry_point = WorkerEntryPoint(callback)
            return worker.entry_point.run(worker)

        setproctitle.setproctitle(settings.MASTER_PROCESS_TITLE)
        supervisor = self.start(callback)
        supervisor.install_signal_handlers()
        supervisor.install_fault_handler()
        supervisor.supervision_loop()
        return supervisor

    def shutdown(self) -> None:
        """Requests a cooperative drain of the running cluster."""
        if self.supervisor is None:
            log.info("Cluster is not running, nothing to shut down.")
            return
        self.supervisor.request_shutdown()
