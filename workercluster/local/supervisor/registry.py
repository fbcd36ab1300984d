import logging
from typing import Dict, Iterator, List, Optional
from .models import WorkerHandle, WorkerStatus

log = logging.getLogger(__name__)


class WorkerRegistry:
    """
    Maps logical slot ids to the handle of the worker currently occupying them.

    Only the supervisor's event loop writes to the registry, so it carries no
    locking of its own. Iteration is always in slot order.
    """

    def __init__(self) -> None:
        self._handles: Dict[int, WorkerHandle] = {}

    def insert(self, handle: WorkerHandle) -> None:
        """
        Registers a handle under its slot id, replacing whatever occupied the
        slot before (a refilled slot keeps its id).
        """
        previous = self._handles.get(handle.slot_id)
        if previous is not None and previous.is_live:
            log.warning(
                f"Slot {handle.slot_id} replaced while its worker (PID {previous.pid}) was still live."
            )
        self._handles[handle.slot_id] = handle

    def update(
        self,
        slot_id: int,
        status: WorkerStatus,
        died_reason: Optional[str] = None,
    ) -> WorkerHandle:
        """
        Updates the status of a slot in place.

        :raises KeyError: If no worker occupies the slot.
        """
        handle = self._handles[slot_id]
        handle.status = status
        if status is WorkerStatus.EXITED:
            handle.died_reason = died_reason
        return handle

    def remove(self, slot_id: int) -> Optional[WorkerHandle]:
        """Retires a slot for good. Ordinary exits do not remove their slot."""
        return self._handles.pop(slot_id, None)

    def get(self, slot_id: int) -> Optional[WorkerHandle]:
        return self._handles.get(slot_id)

    def live_handles(self) -> List[WorkerHandle]:
        return [handle for handle in self if handle.is_live]

    def next_slot_id(self) -> int:
        return max(self._handles, default=0) + 1

    def __iter__(self) -> Iterator[WorkerHandle]:
        for slot_id in sorted(self._handles):
            yield self._handles[slot_id]

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, slot_id: object) -> bool:
        return slot_id in self._handles
