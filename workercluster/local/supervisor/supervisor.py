import os
import time
import signal
import threading
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Protocol
from workercluster import settings
from workercluster.local.config import ClusterConfiguration
from workercluster.local.supervisor import persistence, policy, shutdown
from .events import EventChannel, EventKind, LifecycleEvent
from .models import ClusterStatus, WorkerHandle, WorkerStatus
from .registry import WorkerRegistry

log = logging.getLogger(__name__)
output_log = logging.getLogger("workercluster.output")

OutputListener = Callable[[str], None]


class Spawner(Protocol):
    def spawn(self, slot_id: int, restart_count: int) -> int: ...
    def send(self, slot_id: int, message: object) -> bool: ...
    def close(self) -> None: ...


class Supervisor:
    """
    Owns the worker pool of the master process.

    Lifecycle events are consumed one at a time from the event channel, which
    makes this object the only writer of the registry. Every transition
    rewrites the state file (when diagnostics are attached) and produces a
    line on the output stream.
    """

    def __init__(
        self,
        config: ClusterConfiguration,
        spawner: Spawner,
        channel: Optional[EventChannel] = None,
        state_path: Optional[Path] = None,
        shutdown_timeout: Optional[float] = settings.GRACEFUL_SHUTDOWN_TIMEOUT,
    ) -> None:
        self.config = config
        self.spawner = spawner
        self.channel = channel if channel is not None else EventChannel()
        self.state_path = Path(state_path or settings.CLUSTER_STATE_PATH)
        self.shutdown_timeout = shutdown_timeout

        self.registry = WorkerRegistry()
        self.master_pid = os.getpid()
        self.cluster_status = ClusterStatus.RUNNING
        self.restarts_issued = 0
        self._listeners: List[OutputListener] = []
        self._shutdown_started_at: Optional[float] = None
        # 0: nothing sent yet, 1: SIGTERM sent, 2: SIGKILL sent.
        self._deadline_stage = 0

    #* --- Notifications ---
    def add_output_listener(self, listener: OutputListener) -> None:
        self._listeners.append(listener)

    def emit_output(self, message: str) -> None:
        """Emits one timestamped line on the output stream."""
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        line = f"{timestamp} :: {message}"
        output_log.info(line)
        for listener in list(self._listeners):
            try:
                listener(line)
            except Exception as e:
                log.error(f"Output listener {listener!r} failed: {e}", exc_info=True)

    #* --- Startup ---
    def start(self) -> "Supervisor":
        """
        Forks the configured number of workers, each into a new slot with a
        restart count of 0, and writes the initial snapshot.
        """
        self.emit_output(f"Master started on pid {self.master_pid}, forking {self.config.workers} processes")
        for _ in range(self.config.workers):
            self._fork(self.registry.next_slot_id(), restart_count=0)
        self._persist()
        return self

    def _fork(self, slot_id: int, restart_count: int) -> WorkerHandle:
        self.emit_output("Forking a new worker...!")
        try:
            pid = self.spawner.spawn(slot_id, restart_count)
        except OSError as e:
            # Treated like any other exit so the restart policy applies.
            log.error(f"Failed to fork a worker for slot {slot_id}: {e}", exc_info=True)
            pid = 0
            self.channel.publish(LifecycleEvent(EventKind.EXIT, slot_id, pid, exit_code=1))

        handle = WorkerHandle(slot_id=slot_id, pid=pid, restart_count=restart_count)
        self.registry.insert(handle)
        log.info(f"Worker slot {slot_id} started with PID {pid} (restart #{restart_count}).")
        return handle

    #* --- Event Handling ---
    def dispatch(self, event: LifecycleEvent) -> None:
        """Applies one event from the channel."""
        if event.kind is EventKind.SHUTDOWN:
            self.shutdown()
            return

        handle = self.registry.get(event.slot_id)
        if handle is None or (event.pid is not None and handle.pid != event.pid):
            log.debug(f"Dropping stale {event.kind.value} event for slot {event.slot_id} (PID {event.pid}).")
            return

        if event.kind is EventKind.ONLINE:
            self.on_online(event.slot_id)
        elif event.kind is EventKind.DISCONNECT:
            self.on_disconnect(event.slot_id)
        elif event.kind is EventKind.EXIT:
            self.on_exit(event.slot_id, event.exit_code, event.signal)

    def on_online(self, slot_id: int) -> None:
        handle = self.registry.get(slot_id)
        if handle is None or handle.status is WorkerStatus.EXITED:
            return
        self.registry.update(slot_id, WorkerStatus.ONLINE)
        self.emit_output(f"Worker {handle.pid} is online")
        self._persist()

    def on_disconnect(self, slot_id: int) -> None:
        """Disconnect is intermediate; the exit that follows decides about restarts."""
        handle = self.registry.get(slot_id)
        if handle is None or handle.status is WorkerStatus.EXITED:
            return
        self.registry.update(slot_id, WorkerStatus.DISCONNECTED)
        self.emit_output(f"Worker {slot_id} with PID {handle.pid} disconnected.")
        self._persist()

    def on_exit(self, slot_id: int, exit_code: Optional[int], signal_name: Optional[str] = None) -> None:
        """
        Marks the slot exited and refills it if the restart policy allows.

        An exit for a slot that is already exited is ignored, so a restart
        decision is never taken twice for the same worker.
        """
        handle = self.registry.get(slot_id)
        if handle is None or handle.status is WorkerStatus.EXITED:
            return

        reason = f"The worker died with exit code {exit_code}, and signal {signal_name}"
        self.registry.update(slot_id, WorkerStatus.EXITED, died_reason=reason)
        self._persist()

        decision = policy.decide(handle, self.config)
        cause = signal_name or f"exit code {exit_code}"
        self.emit_output(f"Worker {slot_id} died with {cause}{', Restarting...!' if decision.replace else ''}")

        if decision.replace:
            self.restarts_issued += 1
            self._fork(slot_id, restart_count=decision.next_restart_count)
            self._persist()
        else:
            self.emit_output(f"Maximum restart limit reached for worker {slot_id}")
            self._check_drained()

    #* --- Shutdown ---
    def shutdown(self) -> bool:
        """
        Starts a cooperative drain: auto-restart is switched off for good and
        every live worker is sent 'quit'. Workers stop on their own schedule.

        :return: False if a shutdown was already in progress.
        """
        if self._shutdown_started_at is not None:
            return False
        self._shutdown_started_at = time.monotonic()
        self.config = self.config.with_auto_restart_disabled()
        self.cluster_status = ClusterStatus.DRAINING
        self.emit_output("QUIT received, will exit once all workers have finished current requests")
        shutdown.broadcast_quit(self)
        self._persist()
        self._check_drained()
        return True

    def request_shutdown(self, *_: object) -> None:
        """Queues a shutdown; safe to call from a signal handler or another thread."""
        self.channel.publish(LifecycleEvent(EventKind.SHUTDOWN))

    def install_signal_handlers(self) -> None:
        for name in ("SIGQUIT", "SIGTERM", "SIGINT"):
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, self.request_shutdown)

    def install_fault_handler(self) -> None:
        """Routes uncaught exceptions of the master's background threads to handle_fault."""
        threading.excepthook = lambda args: self.handle_fault(args.exc_value)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_started_at is not None

    @property
    def is_stopped(self) -> bool:
        return self.cluster_status is ClusterStatus.STOPPED

    def _check_drained(self) -> None:
        if self.cluster_status is ClusterStatus.DRAINING and all(
            handle.status is WorkerStatus.EXITED for handle in self.registry
        ):
            self.cluster_status = ClusterStatus.STOPPED
            self.emit_output("All workers have exited, cluster stopped")
            self._persist()

    def force_stop_stragglers(self) -> None:
        """
        Enforces the shutdown deadline without blocking the loop. Workers still
        alive once the grace period has run out get SIGTERM, and those alive
        one more period later get SIGKILL.
        """
        if self.shutdown_timeout is None or self._shutdown_started_at is None or self.is_stopped:
            return
        elapsed = time.monotonic() - self._shutdown_started_at
        if self._deadline_stage == 0 and elapsed >= self.shutdown_timeout:
            self._deadline_stage = 1
            shutdown.terminate_stragglers(self)
        elif self._deadline_stage == 1 and elapsed >= 2 * self.shutdown_timeout:
            self._deadline_stage = 2
            shutdown.kill_stragglers(self)

    #* --- Faults ---
    def handle_fault(self, error: BaseException) -> None:
        """
        Uncaught fault in the master. It is reported and the supervisor keeps
        going; no worker is disconnected, as none is 'current' in the master.
        """
        log.critical(f"Uncaught exception in supervisor: {error}", exc_info=error)
        self.emit_output(f"Uncaught exception: {error}")

    #* --- Persistence ---
    def _persist(self) -> None:
        persistence.write_state_file(self)

    def snapshot(self):
        return persistence.build_snapshot(self)

    #* --- Main Loop ---
    def process_pending(self) -> int:
        """Applies every event already queued, without blocking."""
        processed = 0
        while True:
            event = self.channel.next_event(timeout=0)
            if event is None:
                return processed
            self._dispatch_safely(event)
            processed += 1

    def _dispatch_safely(self, event: LifecycleEvent) -> None:
        try:
            self.dispatch(event)
        except Exception as e:
            self.handle_fault(e)

    def supervision_loop(self) -> None:
        """Consumes lifecycle events until the cluster has fully stopped."""
        log.info("Supervisor started. Monitoring worker processes.")
        while not self.is_stopped:
            try:
                event = self.channel.next_event(timeout=settings.EVENT_POLL_INTERVAL)
                if event is not None:
                    self._dispatch_safely(event)
                self.force_stop_stragglers()
            except KeyboardInterrupt:
                log.info("Supervisor loop interrupted by user.")
                self.shutdown()
            except Exception as e:
                self.handle_fault(e)

        self.spawner.close()
        log.info("Supervisor loop finished, all workers have exited.")
