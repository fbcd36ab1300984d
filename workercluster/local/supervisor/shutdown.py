import psutil
import logging
from typing import TYPE_CHECKING, List
from workercluster.local.worker_entry import QUIT_MESSAGE
from .models import WorkerStatus

if TYPE_CHECKING:
    from .supervisor import Supervisor

log = logging.getLogger(__name__)


def broadcast_quit(supervisor: "Supervisor") -> int:
    """
    Sends the cooperative 'quit' message to every live worker.

    Nothing is terminated here; each worker decides when to stop.

    :param supervisor: The Supervisor instance.
    :return: The number of workers the message reached.
    """
    delivered = 0
    for handle in supervisor.registry.live_handles():
        if supervisor.spawner.send(handle.slot_id, QUIT_MESSAGE):
            delivered += 1
        else:
            log.debug(f"Worker {handle.slot_id} (PID {handle.pid}) is no longer reachable, skipping 'quit'.")
    log.info(f"'quit' delivered to {delivered} worker(s).")
    return delivered


def identify_stragglers(supervisor: "Supervisor") -> List[psutil.Process]:
    """
    Collects the processes of workers that have not exited yet.

    :param supervisor: The Supervisor instance.
    :return: psutil.Process objects still running, in slot order.
    """
    stragglers: List[psutil.Process] = []
    for handle in supervisor.registry:
        if handle.status is WorkerStatus.EXITED or handle.pid <= 0:
            continue
        try:
            proc = psutil.Process(handle.pid)
            if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE:
                stragglers.append(proc)
        except psutil.NoSuchProcess:
            continue
    return stragglers


def terminate_stragglers(supervisor: "Supervisor") -> int:
    """
    Sends SIGTERM to workers that ignored 'quit' past the grace period.
    Does not wait; their exits arrive on the event channel like any other.

    :return: The number of workers signalled.
    """
    stragglers = identify_stragglers(supervisor)
    if stragglers:
        supervisor.emit_output(f"Grace period over, terminating {len(stragglers)} remaining worker(s)")
    for proc in stragglers:
        try:
            log.debug(f"Sending SIGTERM to worker PID {proc.pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            log.debug(f"Worker PID {proc.pid} exited before SIGTERM.")
    return len(stragglers)


def kill_stragglers(supervisor: "Supervisor") -> int:
    """
    Sends SIGKILL to workers still alive after SIGTERM.

    :return: The number of workers killed.
    """
    stragglers = identify_stragglers(supervisor)
    for proc in stragglers:
        try:
            log.warning(f"Killing worker PID {proc.pid}, it did not stop after SIGTERM.")
            proc.kill()
        except psutil.NoSuchProcess:
            log.debug(f"Worker PID {proc.pid} exited before SIGKILL.")
    return len(stragglers)
