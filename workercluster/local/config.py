import logging
from dataclasses import dataclass, replace
from typing import Optional

import workercluster.settings as default_settings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterConfiguration:
    """
    Settings the supervisor runs with.

    The value is frozen. The only two fields that change over a cluster's life
    (auto_restart, switched off once by shutdown, and diagnostics_attached,
    switched on when the endpoints are registered) change by producing a new
    configuration through the helper methods below.
    """
    workers: int
    auto_restart: bool = False
    auto_restart_limit: int = 3
    diagnostics_attached: bool = False
    bind_host: str = "127.0.0.1"
    bind_port: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.workers, bool) or not isinstance(self.workers, int) or self.workers < 1:
            raise ValueError(f"Worker count must be a positive integer, got {self.workers!r}.")
        if not isinstance(self.auto_restart_limit, int) or self.auto_restart_limit < 0:
            raise ValueError(
                f"Auto-restart limit must be a non-negative integer, got {self.auto_restart_limit!r}."
            )

    @classmethod
    def from_settings(
        cls,
        workers: Optional[int] = None,
        auto_restart: Optional[bool] = None,
        auto_restart_limit: Optional[int] = None,
        bind_host: Optional[str] = None,
        bind_port: Optional[int] = None,
    ) -> "ClusterConfiguration":
        """
        Builds a configuration from settings.py, with explicit arguments taking
        precedence. A None argument falls back to the default.

        :return: A validated ClusterConfiguration.
        :raises ValueError: If the resulting values are out of range.
        """
        config = cls(
            workers=default_settings.CLUSTER_WORKERS if workers is None else workers,
            auto_restart=default_settings.CLUSTER_AUTO_RESTART if auto_restart is None else auto_restart,
            auto_restart_limit=(
                default_settings.CLUSTER_AUTO_RESTART_LIMIT if auto_restart_limit is None else auto_restart_limit
            ),
            bind_host=default_settings.CLUSTER_BIND_HOST if bind_host is None else bind_host,
            bind_port=default_settings.CLUSTER_BIND_PORT if bind_port is None else bind_port,
        )
        log.debug(f"Cluster configuration resolved: {config}")
        return config

    def with_auto_restart_disabled(self) -> "ClusterConfiguration":
        return replace(self, auto_restart=False)

    def with_diagnostics_attached(self) -> "ClusterConfiguration":
        return replace(self, diagnostics_attached=True)
