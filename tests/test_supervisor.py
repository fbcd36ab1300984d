"""
Supervisor lifecycle tests, run against the in-memory FakeSpawner so no real
processes are forked.
"""

import json
import re

import pytest

from workercluster.local.supervisor import (
    ClusterStatus,
    EventKind,
    LifecycleEvent,
    WorkerStatus,
)
from workercluster.local.supervisor import shutdown as shutdown_module

LINE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z :: .+")


def _read_state(state_path):
    return json.loads(state_path.read_text())


def _bring_online(supervisor):
    for handle in list(supervisor.registry):
        supervisor.on_online(handle.slot_id)


class TestStartup:
    def test_registers_one_spawning_handle_per_worker(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=3).start()

        handles = list(supervisor.registry)
        assert len(supervisor.registry) == 3
        assert [h.slot_id for h in handles] == [1, 2, 3]
        assert all(h.status is WorkerStatus.SPAWNING for h in handles)
        assert all(h.restart_count == 0 for h in handles)
        assert [pid for _, _, pid in spawner.spawned] == [h.pid for h in handles]

    def test_emits_timestamped_startup_and_fork_lines(self, make_supervisor):
        supervisor = make_supervisor(workers=2).start()

        assert all(LINE_PATTERN.match(line) for line in supervisor.lines)
        assert f"Master started on pid {supervisor.master_pid}, forking 2 processes" in supervisor.lines[0]
        assert sum("Forking a new worker...!" in line for line in supervisor.lines) == 2

    def test_writes_initial_snapshot_when_diagnostics_attached(self, make_supervisor, state_path):
        supervisor = make_supervisor(workers=2).start()

        state = _read_state(state_path)
        assert state["cluster_size"] == 2
        assert state["master_process_id"] == supervisor.master_pid
        assert state["cluster_status"] == "running"
        assert [w["status"] for w in state["workers"]] == ["", ""]

    def test_no_state_file_without_diagnostics(self, make_supervisor, state_path):
        supervisor = make_supervisor(workers=2, diagnostics=False).start()
        _bring_online(supervisor)
        supervisor.on_exit(1, 1)

        assert not state_path.exists()


class TestTransitions:
    def test_online_and_disconnect_update_status(self, make_supervisor, state_path):
        supervisor = make_supervisor(workers=2).start()
        pid = supervisor.registry.get(1).pid

        supervisor.on_online(1)
        assert supervisor.registry.get(1).status is WorkerStatus.ONLINE
        assert f"Worker {pid} is online" in supervisor.lines[-1]

        supervisor.on_disconnect(1)
        assert supervisor.registry.get(1).status is WorkerStatus.DISCONNECTED
        assert f"Worker 1 with PID {pid} disconnected." in supervisor.lines[-1]
        assert _read_state(state_path)["workers"][0]["status"] == "disconnect"

    def test_disconnect_alone_does_not_restart(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=1).start()
        supervisor.on_online(1)
        supervisor.on_disconnect(1)

        assert len(spawner.spawned) == 1

    def test_exit_records_reason_and_replaces_under_same_slot(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=2).start()
        _bring_online(supervisor)
        old_pid = supervisor.registry.get(1).pid

        supervisor.on_exit(1, 1, None)

        replacement = supervisor.registry.get(1)
        assert replacement.pid != old_pid
        assert replacement.restart_count == 1
        assert replacement.status is WorkerStatus.SPAWNING
        assert spawner.spawned[-1] == (1, 1, replacement.pid)
        assert any("Worker 1 died with exit code 1, Restarting...!" in line for line in supervisor.lines)

    def test_exit_by_signal_mentions_signal(self, make_supervisor, state_path):
        supervisor = make_supervisor(workers=1, auto_restart=False).start()
        supervisor.on_exit(1, None, "SIGKILL")

        assert any("Worker 1 died with SIGKILL" in line for line in supervisor.lines)
        worker = _read_state(state_path)["workers"][0]
        assert worker["status"] == "exit"
        assert worker["reason"] == "The worker died with exit code None, and signal SIGKILL"

    def test_stale_events_from_replaced_worker_are_dropped(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=1).start()
        old_pid = supervisor.registry.get(1).pid
        supervisor.dispatch(LifecycleEvent(EventKind.EXIT, 1, old_pid, exit_code=1))
        assert supervisor.registry.get(1).restart_count == 1

        # Replaying the same exit must not cost another restart.
        supervisor.dispatch(LifecycleEvent(EventKind.EXIT, 1, old_pid, exit_code=1))
        assert supervisor.registry.get(1).restart_count == 1
        assert len(spawner.spawned) == 2

    def test_events_flow_through_the_channel_in_order(self, make_supervisor):
        supervisor = make_supervisor(workers=1, auto_restart=False).start()
        pid = supervisor.registry.get(1).pid
        for kind in (EventKind.ONLINE, EventKind.DISCONNECT):
            supervisor.channel.publish(LifecycleEvent(kind, 1, pid))
        supervisor.channel.publish(LifecycleEvent(EventKind.EXIT, 1, pid, exit_code=0))

        assert supervisor.process_pending() == 3
        assert supervisor.registry.get(1).status is WorkerStatus.EXITED


class TestRestartBudget:
    def test_scenario_slot_exhausts_its_restart_limit(self, make_supervisor, spawner, state_path):
        supervisor = make_supervisor(workers=2, auto_restart=True, auto_restart_limit=3).start()
        _bring_online(supervisor)

        for expected_count in (1, 2, 3):
            supervisor.on_exit(1, 1)
            assert supervisor.registry.get(1).restart_count == expected_count
            supervisor.on_online(1)

        spawned_before = len(spawner.spawned)
        supervisor.on_exit(1, 1)

        assert len(spawner.spawned) == spawned_before
        assert supervisor.registry.get(1).status is WorkerStatus.EXITED
        assert "Maximum restart limit reached for worker 1" in supervisor.lines[-1]

        state = _read_state(state_path)
        assert len(state["workers"]) == 2
        live = [w for w in state["workers"] if w["status"] != "exit"]
        assert len(live) == state["cluster_size"] - 1

    def test_replacements_per_slot_never_exceed_limit(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=2, auto_restart_limit=2).start()

        for _ in range(5):
            supervisor.on_exit(2, 1)

        slot_two_forks = [entry for entry in spawner.spawned if entry[0] == 2]
        assert len(slot_two_forks) == 1 + 2
        assert supervisor.registry.get(1).restart_count == 0

    @pytest.mark.parametrize("auto_restart", [True, False])
    def test_limit_zero_never_restarts(self, make_supervisor, spawner, auto_restart):
        supervisor = make_supervisor(workers=2, auto_restart=auto_restart, auto_restart_limit=0).start()
        supervisor.on_exit(1, 1)
        supervisor.on_exit(2, 1)

        assert len(spawner.spawned) == 2
        assert supervisor.restarts_issued == 0

    def test_auto_restart_disabled_leaves_slot_exited(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=1, auto_restart=False).start()
        supervisor.on_exit(1, 1)

        assert supervisor.registry.get(1).status is WorkerStatus.EXITED
        assert len(spawner.spawned) == 1

    def test_fork_failure_surfaces_as_exit_and_is_retried(self, make_supervisor, spawner):
        spawner.failures_pending = 1
        supervisor = make_supervisor(workers=1, auto_restart_limit=1).start()
        assert supervisor.registry.get(1).pid == 0

        supervisor.process_pending()

        handle = supervisor.registry.get(1)
        assert handle.pid != 0
        assert handle.restart_count == 1
        assert any("died with exit code 1" in line for line in supervisor.lines)


class TestSnapshot:
    def test_snapshot_lists_every_registered_slot(self, make_supervisor, state_path):
        supervisor = make_supervisor(workers=3, auto_restart=False).start()
        _bring_online(supervisor)
        supervisor.on_exit(2, 1)

        state = _read_state(state_path)
        assert len(state["workers"]) == len(supervisor.registry) == 3
        assert [w["worker_id"] for w in state["workers"]] == [1, 2, 3]
        assert "reason" not in state["workers"][0]
        assert state["workers"][1]["reason"] == "The worker died with exit code 1, and signal None"

    def test_write_failure_does_not_disturb_supervisor(self, make_supervisor, state_path):
        state_path.mkdir(parents=True)  # a directory where the file should go
        supervisor = make_supervisor(workers=1).start()
        supervisor.on_online(1)

        assert supervisor.registry.get(1).status is WorkerStatus.ONLINE
        assert any("Failed to persist cluster state" in line for line in supervisor.lines)


class TestShutdown:
    def test_shutdown_sends_quit_to_live_workers_only(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=3).start()
        _bring_online(supervisor)
        supervisor.on_disconnect(3)

        assert supervisor.shutdown() is True

        assert spawner.sent == [(1, "quit"), (2, "quit")]
        assert supervisor.config.auto_restart is False
        assert supervisor.cluster_status is ClusterStatus.DRAINING
        assert "QUIT received, will exit once all workers have finished current requests" in supervisor.lines[-1]

    def test_shutdown_is_idempotent(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=2).start()
        supervisor.shutdown()
        lines_after_first = len(supervisor.lines)

        assert supervisor.shutdown() is False
        assert len(spawner.sent) == 2
        assert len(supervisor.lines) == lines_after_first

    def test_no_restart_after_shutdown_even_under_budget(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=2, auto_restart=True, auto_restart_limit=3).start()
        _bring_online(supervisor)
        supervisor.shutdown()

        supervisor.on_exit(1, 1)
        supervisor.on_exit(2, None, "SIGTERM")

        assert len(spawner.spawned) == 2
        assert supervisor.restarts_issued == 0

    def test_cluster_stops_once_every_worker_exited(self, make_supervisor, state_path):
        supervisor = make_supervisor(workers=2).start()
        _bring_online(supervisor)
        supervisor.shutdown()

        supervisor.on_exit(1, 0)
        assert supervisor.cluster_status is ClusterStatus.DRAINING
        assert _read_state(state_path)["cluster_status"] == "draining"

        supervisor.on_exit(2, 0)
        assert supervisor.is_stopped
        assert _read_state(state_path)["cluster_status"] == "stopped"

    def test_shutdown_request_goes_through_the_channel(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=1).start()
        supervisor.request_shutdown()
        supervisor.request_shutdown()

        supervisor.process_pending()

        assert supervisor.is_shutting_down
        assert spawner.sent == [(1, "quit")]

    def test_unreachable_worker_is_skipped(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=2).start()
        spawner.unreachable.add(1)

        assert shutdown_module.broadcast_quit(supervisor) == 1
        assert spawner.sent == [(2, "quit")]

    def test_deadline_sends_sigterm_then_sigkill_once_each(self, make_supervisor, monkeypatch):
        calls = []
        monkeypatch.setattr(shutdown_module, "terminate_stragglers", lambda sup: calls.append("terminate") or 1)
        monkeypatch.setattr(shutdown_module, "kill_stragglers", lambda sup: calls.append("kill") or 1)
        supervisor = make_supervisor(workers=1, shutdown_timeout=0.0).start()

        supervisor.force_stop_stragglers()
        assert calls == []

        supervisor.shutdown()
        for _ in range(4):
            supervisor.force_stop_stragglers()
        assert calls == ["terminate", "kill"]

    def test_deadline_waits_for_grace_period(self, make_supervisor, monkeypatch):
        calls = []
        monkeypatch.setattr(shutdown_module, "terminate_stragglers", lambda sup: calls.append("terminate") or 1)
        supervisor = make_supervisor(workers=1, shutdown_timeout=60.0).start()
        supervisor.shutdown()

        supervisor.force_stop_stragglers()
        assert calls == []

    def test_no_deadline_by_default(self, make_supervisor, monkeypatch):
        calls = []
        monkeypatch.setattr(shutdown_module, "terminate_stragglers", lambda sup: calls.append("terminate") or 1)
        supervisor = make_supervisor(workers=1, shutdown_timeout=None).start()
        supervisor.shutdown()

        supervisor.force_stop_stragglers()
        assert calls == []


class TestFaults:
    def test_master_fault_is_reported_without_touching_workers(self, make_supervisor, spawner):
        supervisor = make_supervisor(workers=2).start()
        supervisor.handle_fault(RuntimeError("boom"))

        assert "Uncaught exception: boom" in supervisor.lines[-1]
        assert spawner.sent == []
        assert all(h.status is WorkerStatus.SPAWNING for h in supervisor.registry)

    def test_failing_handler_does_not_stop_event_processing(self, make_supervisor, monkeypatch):
        supervisor = make_supervisor(workers=2).start()

        def explode(slot_id):
            raise ValueError("bad transition")

        monkeypatch.setattr(supervisor, "on_online", explode)
        supervisor.channel.publish(LifecycleEvent(EventKind.ONLINE, 1, supervisor.registry.get(1).pid))
        supervisor.channel.publish(LifecycleEvent(EventKind.DISCONNECT, 2, supervisor.registry.get(2).pid))

        assert supervisor.process_pending() == 2
        assert any("Uncaught exception: bad transition" in line for line in supervisor.lines)
        assert supervisor.registry.get(2).status is WorkerStatus.DISCONNECTED

    def test_failing_output_listener_is_isolated(self, make_supervisor):
        supervisor = make_supervisor(workers=1)

        def broken(line):
            raise RuntimeError("listener down")

        supervisor.add_output_listener(broken)
        supervisor.start()

        assert len(supervisor.registry) == 1
        assert supervisor.lines
