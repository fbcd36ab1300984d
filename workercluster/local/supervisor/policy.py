from typing import NamedTuple
from .models import WorkerHandle
from workercluster.local.config import ClusterConfiguration


class RestartDecision(NamedTuple):
    replace: bool
    next_restart_count: int


def decide(handle: WorkerHandle, config: ClusterConfiguration) -> RestartDecision:
    """
    Decides whether an exited worker gets a replacement in its slot.

    A slot is refilled only while auto-restart is enabled and the slot's
    lineage has been restarted fewer times than the configured limit, so a
    limit of zero never restarts anything. The returned count belongs to the
    replacement, not to a fresh lineage.

    :param handle: The handle of the worker that just exited.
    :param config: The current cluster configuration.
    :return: The decision and the restart count the replacement would carry.
    """
    if config.auto_restart and handle.restart_count < config.auto_restart_limit:
        return RestartDecision(True, handle.restart_count + 1)
    return RestartDecision(False, handle.restart_count)
