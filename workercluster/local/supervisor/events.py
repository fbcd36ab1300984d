import queue
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)


class EventKind(str, Enum):
    ONLINE = "online"
    DISCONNECT = "disconnect"
    EXIT = "exit"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class LifecycleEvent:
    """
    One transition reported by the spawning facility (or a shutdown request).

    pid identifies which process of the slot's lineage the event is about,
    so events from a worker that has already been replaced can be told apart.
    """
    kind: EventKind
    slot_id: Optional[int] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    signal: Optional[str] = None


class EventChannel:
    """
    Ordered, thread-safe hand-off of lifecycle events to the supervisor.

    Any number of threads may publish; exactly one (the supervisor loop)
    consumes.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[LifecycleEvent]" = queue.Queue()

    def publish(self, event: LifecycleEvent) -> None:
        log.debug(f"Lifecycle event queued: {event}")
        self._queue.put(event)

    def next_event(self, timeout: Optional[float] = None) -> Optional[LifecycleEvent]:
        """
        Returns the next event, or None if none arrived within the timeout.
        A timeout of 0 polls without blocking.
        """
        try:
            if timeout == 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
