import sys
import logging

from workercluster import settings
from workercluster.log.handler import LokiHandler

OUTPUT_LOGGER_NAME = "workercluster.output"


class MainFormatter(logging.Formatter):
    """
    Formats regular records with level and logger name. Lines of the cluster
    output stream already carry their own timestamp and are printed raw.
    """

    def __init__(self) -> None:
        super().__init__("%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        if record.name == OUTPUT_LOGGER_NAME:
            return f"[{record.processName}] {record.getMessage()}"
        return super().format(record)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the cluster.
    This sets up a console handler and optionally a Loki handler, clearing
    any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Loki Handler (conditional) ---
    if settings.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(url=settings.LOKI_URL, org_id=settings.LOKI_ORG_ID)
            loki_handler.setLevel(logging.INFO)
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {settings.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
