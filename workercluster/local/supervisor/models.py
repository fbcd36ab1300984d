from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class WorkerStatus(str, Enum):
    """Last known state of a worker. The value is what the state file stores."""
    SPAWNING = ""
    ONLINE = "online"
    DISCONNECTED = "disconnect"
    EXITED = "exit"


class ClusterStatus(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class WorkerHandle:
    """
    Identity and last known status of the worker occupying one slot.

    slot_id is stable for the whole lineage of the slot, pid changes every
    time the slot is refilled. restart_count is carried over to the
    replacement so the auto-restart limit applies per slot.
    """
    slot_id: int
    pid: int
    status: WorkerStatus = WorkerStatus.SPAWNING
    restart_count: int = 0
    died_reason: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status in (WorkerStatus.SPAWNING, WorkerStatus.ONLINE)


@dataclass(frozen=True)
class WorkerSummary:
    worker_id: int
    pid: int
    status: WorkerStatus
    reason: Optional[str] = None

    @classmethod
    def from_handle(cls, handle: WorkerHandle) -> "WorkerSummary":
        reason = (handle.died_reason or "") if handle.status is WorkerStatus.EXITED else None
        return cls(worker_id=handle.slot_id, pid=handle.pid, status=handle.status, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"worker_id": self.worker_id, "pid": self.pid, "status": self.status.value}
        if self.status is WorkerStatus.EXITED:
            data["reason"] = self.reason or ""
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerSummary":
        return cls(
            worker_id=int(data["worker_id"]),
            pid=int(data["pid"]),
            status=WorkerStatus(data.get("status", "")),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """A complete, point-in-time rendering of the pool, as written to the state file."""
    cluster_size: int
    master_process_id: int
    cluster_status: ClusterStatus
    workers: List[WorkerSummary] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_size": self.cluster_size,
            "master_process_id": self.master_process_id,
            "cluster_status": self.cluster_status.value,
            "workers": [worker.to_dict() for worker in self.workers],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        return cls(
            cluster_size=int(data["cluster_size"]),
            master_process_id=int(data["master_process_id"]),
            cluster_status=ClusterStatus(data["cluster_status"]),
            workers=[WorkerSummary.from_dict(item) for item in data.get("workers", [])],
        )
