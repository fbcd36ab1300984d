import os
import json
import logging
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict
from .models import SessionSnapshot, WorkerSummary

if TYPE_CHECKING:
    from .supervisor import Supervisor

log = logging.getLogger(__name__)


def build_snapshot(supervisor: "Supervisor") -> SessionSnapshot:
    """
    Renders the whole registry into a fresh snapshot.

    Exited workers that were not replaced are included, so the worker list is
    always as long as the registry.

    :param supervisor: The Supervisor instance.
    """
    return SessionSnapshot(
        cluster_size=supervisor.config.workers,
        master_process_id=supervisor.master_pid,
        cluster_status=supervisor.cluster_status,
        workers=[WorkerSummary.from_handle(handle) for handle in supervisor.registry],
    )


def write_state_file(supervisor: "Supervisor") -> bool:
    """
    Writes the current snapshot to the state file, if diagnostics are attached.

    The write goes to a temporary sibling first and is then moved over the
    target. A failure is reported and otherwise ignored; the registry stays
    authoritative and the next transition writes again.

    :param supervisor: The Supervisor instance.
    :return: True if a snapshot was written.
    """
    if not supervisor.config.diagnostics_attached:
        return False

    state_path = Path(supervisor.state_path)
    temp_path = state_path.with_name(f"{state_path.name}.{os.getpid()}.tmp")
    snapshot = build_snapshot(supervisor)
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        with temp_path.open("w") as f:
            json.dump(snapshot.to_dict(), f)
        temp_path.replace(state_path)
        return True
    except (IOError, OSError) as e:
        log.error(f"Failed to write cluster state file '{state_path}': {e}", exc_info=True)
        supervisor.emit_output(f"Failed to persist cluster state: {e}")
        return False
    finally:
        with suppress(OSError):
            temp_path.unlink(missing_ok=True)


def read_state_file(state_path: Path) -> Dict[str, Any]:
    """
    Reads the state file back as plain JSON data.

    Missing or malformed files are not handled here; callers see the
    FileNotFoundError or json.JSONDecodeError.
    """
    with Path(state_path).open("r") as f:
        return json.load(f)


def load_snapshot(state_path: Path) -> SessionSnapshot:
    return SessionSnapshot.from_dict(read_state_file(state_path))
