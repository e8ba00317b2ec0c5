"""Structured logging utilities."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Setup process-wide logging.

    Context is attached to records through ``extra={...}`` by callers.

    Args:
        level: Logging level name
    """
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)
    # websockets logs every failed handshake (e.g. plain HTTP health checks) at INFO
    logging.getLogger("websockets").setLevel(max(logging.WARNING, logging.getLogger().level))
