"""
Everything that runs inside a spawned worker process.

The master forks into `run_worker`, which announces the worker as online,
starts listening for control messages from the master and then hands over to
the caller's callback through a WorkerEntryPoint.
"""
import os
import signal
import socket
import logging
import threading
import setproctitle
from multiprocessing.connection import Connection
from typing import Any, Callable, List, Optional
from workercluster import settings

log = logging.getLogger(__name__)

ONLINE_MESSAGE = "online"
DISCONNECT_MESSAGE = "disconnect"
QUIT_MESSAGE = "quit"

# Set once in a worker process; stays None in the master.
_current_worker: Optional["WorkerContext"] = None


def current_worker() -> Optional["WorkerContext"]:
    """Returns this process's own worker handle, or None in the master."""
    return _current_worker


def is_worker_process() -> bool:
    return _current_worker is not None


class WorkerContext:
    """
    The worker's handle on itself, passed to the caller's callback.

    Messages from the master (notably "quit") are delivered to every handler
    registered with `on_message`. What a worker does about "quit" is up to
    the callback; `quit_requested` is set either way.
    """

    def __init__(
        self,
        slot_id: int,
        restart_count: int,
        conn: Connection,
        listen_socket: Optional[socket.socket] = None,
    ) -> None:
        self.slot_id = slot_id
        self.restart_count = restart_count
        self.pid = os.getpid()
        self.socket = listen_socket
        self.quit_requested = threading.Event()
        self._conn = conn
        self._connected = True
        self._handlers: List[Callable[[Any], None]] = []
        self._lock = threading.Lock()
        self.entry_point: Optional["WorkerEntryPoint"] = None

    @property
    def id(self) -> int:
        return self.slot_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_message(self, handler: Callable[[Any], None]) -> None:
        with self._lock:
            self._handlers.append(handler)

    def send(self, message: Any) -> bool:
        """Sends a message to the master. Returns False once disconnected."""
        if not self._connected:
            return False
        try:
            self._conn.send(message)
            return True
        except (OSError, ValueError) as e:
            log.debug(f"Worker {self.slot_id} could not message the master: {e}")
            return False

    def disconnect(self) -> None:
        """
        Closes the control channel to the master. The master sees this worker
        as disconnected; the process itself keeps running until it returns.
        """
        if not self._connected:
            return
        self._connected = False
        # While the listener thread is blocked in recv() the pipe stays open
        # after close(), so the master is told explicitly.
        try:
            self._conn.send(DISCONNECT_MESSAGE)
        except (OSError, ValueError) as e:
            log.debug(f"Worker {self.slot_id} could not announce its disconnect: {e}")
        self._conn.close()
        log.info(f"Worker {self.slot_id} (PID {self.pid}) disconnected from the master.")

    def start_listening(self) -> None:
        threading.Thread(target=self._listen, daemon=True, name="MasterMessageListener").start()

    def _listen(self) -> None:
        try:
            while self._connected:
                message = self._conn.recv()
                self._dispatch(message)
        except (EOFError, OSError):
            log.debug(f"Control channel of worker {self.slot_id} closed.")

    def _dispatch(self, message: Any) -> None:
        if message == QUIT_MESSAGE:
            log.info(f"Worker {self.slot_id} (PID {self.pid}) received 'quit' from the master.")
            self.quit_requested.set()
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(message)
            except Exception as e:
                log.error(f"Message handler of worker {self.slot_id} failed: {e}", exc_info=True)


class WorkerEntryPoint:
    """Invokes the caller's initialization callback, exactly once."""

    def __init__(self, callback: Optional[Callable[[WorkerContext], Any]] = None) -> None:
        self.callback = callback if callable(callback) else None
        self._invoked = False

    def run(self, worker: WorkerContext) -> "WorkerEntryPoint":
        if self._invoked:
            log.warning(f"Worker {worker.slot_id} entry point already ran. Ignoring.")
            return self
        self._invoked = True
        if self.callback is not None:
            self.callback(worker)
        return self


def handle_worker_fault(worker: WorkerContext, error: BaseException) -> None:
    """
    Uncaught fault inside a worker: log it and disconnect this worker from
    the master, which then sees it disconnect and exit.
    """
    log.critical(f"Uncaught exception in worker {worker.slot_id} (PID {worker.pid}): {error}", exc_info=error)
    worker.disconnect()


def reset_signal_handlers() -> None:
    """
    Restores the interpreter's default handling of the shutdown signals.
    Workers forked after the master installed its own handlers inherit them.
    """
    for name in ("SIGQUIT", "SIGTERM"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, signal.SIG_DFL)
    signal.signal(signal.SIGINT, signal.default_int_handler)


def run_worker(
    worker_end: Connection,
    master_end: Connection,
    slot_id: int,
    restart_count: int,
    callback: Optional[Callable[[WorkerContext], Any]],
    listen_socket: Optional[socket.socket],
) -> None:
    """
    Target of every forked worker process.

    :param worker_end: This worker's end of the control pipe.
    :param master_end: The master's end, inherited through fork and closed here.
    :param slot_id: The slot this worker occupies.
    :param restart_count: How many times the slot has been refilled before.
    :param callback: The caller's initialization callback.
    :param listen_socket: The shared listening socket, if one was bound.
    """
    global _current_worker
    reset_signal_handlers()
    master_end.close()
    setproctitle.setproctitle(settings.WORKER_PROCESS_TITLE.format(slot_id=slot_id))

    worker = WorkerContext(slot_id, restart_count, worker_end, listen_socket)
    worker.entry_point = WorkerEntryPoint(callback)
    _current_worker = worker
    threading.excepthook = lambda args: handle_worker_fault(worker, args.exc_value)

    worker.start_listening()
    worker.send(ONLINE_MESSAGE)
    try:
        worker.entry_point.run(worker)
    except Exception as e:
        handle_worker_fault(worker, e)
        raise SystemExit(1)
