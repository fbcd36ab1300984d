from typing import Any, List, Set, Tuple

import pytest

from workercluster.local.config import ClusterConfiguration
from workercluster.local.supervisor import EventChannel, Supervisor


class FakeSpawner:
    """In-memory stand-in for the fork-based spawner: hands out increasing pids."""

    def __init__(self, first_pid: int = 1000):
        self._next_pid = first_pid
        self.spawned: List[Tuple[int, int, int]] = []
        self.sent: List[Tuple[int, Any]] = []
        self.unreachable: Set[int] = set()
        self.failures_pending = 0
        self.closed = False

    def spawn(self, slot_id: int, restart_count: int) -> int:
        if self.failures_pending:
            self.failures_pending -= 1
            raise OSError("fork failed")
        self._next_pid += 1
        self.spawned.append((slot_id, restart_count, self._next_pid))
        return self._next_pid

    def send(self, slot_id: int, message: Any) -> bool:
        if slot_id in self.unreachable:
            return False
        self.sent.append((slot_id, message))
        return True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "data.json"


@pytest.fixture
def make_supervisor(spawner, state_path):
    """Builds a Supervisor over the fake spawner; collected output lines are on `.lines`."""

    def _make(workers=2, auto_restart=True, auto_restart_limit=3, diagnostics=True, **kwargs):
        config = ClusterConfiguration(
            workers=workers,
            auto_restart=auto_restart,
            auto_restart_limit=auto_restart_limit,
            diagnostics_attached=diagnostics,
        )
        supervisor = Supervisor(config, spawner, EventChannel(), state_path, **kwargs)
        supervisor.lines = []
        supervisor.add_output_listener(supervisor.lines.append)
        return supervisor

    return _make
