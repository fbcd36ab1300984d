import signal
import socket
import logging
import threading
import multiprocessing
from multiprocessing.connection import Connection
from typing import Any, Callable, Dict, Optional, Tuple
from workercluster import settings
from workercluster.local.worker_entry import DISCONNECT_MESSAGE, ONLINE_MESSAGE, run_worker
from .events import EventChannel, EventKind, LifecycleEvent

log = logging.getLogger(__name__)


#* --- Exit Status ---
def describe_exitcode(exitcode: Optional[int]) -> Tuple[Optional[int], Optional[str]]:
    """
    Splits a multiprocessing exit code into (exit code, signal name).

    A negative exit code means the process was killed by that signal, in
    which case there is no exit code, only a signal.
    """
    if exitcode is not None and exitcode < 0:
        try:
            return None, signal.Signals(-exitcode).name
        except ValueError:
            return None, str(-exitcode)
    return exitcode, None


#* --- Shared Listening Endpoint ---
def bind_listening_socket(host: str, port: int, backlog: int = settings.LISTEN_BACKLOG) -> socket.socket:
    """
    Binds the TCP socket every worker accepts connections on.

    It is created once in the master, before any fork, so all workers inherit
    the same descriptor and the kernel spreads incoming connections across them.
    """
    sock = socket.create_server((host, port), backlog=backlog)
    sock.set_inheritable(True)
    log.info(f"Shared listening socket bound on {host}:{sock.getsockname()[1]} (fd {sock.fileno()}).")
    return sock


#* --- Process Creation ---
class ProcessSpawner:
    """
    Forks worker processes and reports their lifecycle on the event channel.

    Each worker gets a duplex pipe to the master. A watcher thread per worker
    turns what happens on that pipe and to the process into events: the
    worker's 'online' message, its 'disconnect' message or EOF on the pipe,
    and the process exit. The watcher never touches supervisor state.
    """

    def __init__(
        self,
        channel: EventChannel,
        callback: Optional[Callable[[Any], None]] = None,
        listen_socket: Optional[socket.socket] = None,
    ) -> None:
        self.channel = channel
        self.callback = callback
        self.listen_socket = listen_socket
        # Closures and the inherited socket cannot be pickled, so workers are forked.
        self._context = multiprocessing.get_context("fork")
        self._connections: Dict[int, Connection] = {}

    def spawn(self, slot_id: int, restart_count: int) -> int:
        """
        Starts a worker for the given slot.

        :return: The OS process id of the new worker.
        :raises OSError: If the process could not be forked.
        """
        master_end, worker_end = self._context.Pipe(duplex=True)
        process = self._context.Process(
            target=run_worker,
            args=(worker_end, master_end, slot_id, restart_count, self.callback, self.listen_socket),
            name=f"worker-{slot_id}",
        )
        try:
            process.start()
        except OSError:
            master_end.close()
            worker_end.close()
            raise
        # Later forks must not inherit this end, or EOF would never be seen.
        worker_end.close()

        self._connections[slot_id] = master_end
        threading.Thread(
            target=self._watch_worker,
            args=(slot_id, process, master_end),
            daemon=True,
            name=f"WorkerWatcher-{slot_id}",
        ).start()
        return process.pid

    def _watch_worker(self, slot_id: int, process: multiprocessing.process.BaseProcess, conn: Connection) -> None:
        pid = process.pid
        try:
            while True:
                message = conn.recv()
                if message == ONLINE_MESSAGE:
                    self.channel.publish(LifecycleEvent(EventKind.ONLINE, slot_id, pid))
                elif message == DISCONNECT_MESSAGE:
                    break
                else:
                    log.debug(f"Message from worker {slot_id} (PID {pid}): {message!r}")
        except (EOFError, OSError):
            pass

        if self._connections.get(slot_id) is conn:
            del self._connections[slot_id]
        # Closing our end also releases the worker's listener thread.
        conn.close()
        self.channel.publish(LifecycleEvent(EventKind.DISCONNECT, slot_id, pid))
        process.join()
        exit_code, signal_name = describe_exitcode(process.exitcode)
        self.channel.publish(LifecycleEvent(EventKind.EXIT, slot_id, pid, exit_code, signal_name))

    def send(self, slot_id: int, message: Any) -> bool:
        """
        Sends a control message to the worker in a slot.

        :return: False if the worker's channel is already gone.
        """
        conn = self._connections.get(slot_id)
        if conn is None:
            return False
        try:
            conn.send(message)
            return True
        except (OSError, ValueError) as e:
            log.debug(f"Could not send {message!r} to worker {slot_id}: {e}")
            return False

    def close(self) -> None:
        """Releases the master's copy of the listening socket."""
        if self.listen_socket is not None:
            self.listen_socket.close()
