"""Process-wide logging configuration for the service and CLI."""

import logging
import sys
from typing import Union


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep task_tracker and uvicorn logs, drop other libraries below WARNING."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith("task_tracker") or name.startswith("uvicorn"):
            return True
        return record.levelno >= logging.WARNING


def configure_logging(level: Union[str, int] = logging.INFO) -> None:
    """
    Install a single stderr handler on the root logger.

    Call this once, before the server starts.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root = logging.getLogger()
    root.setLevel(level)

    # Remove any pre-existing handlers to avoid duplicates.
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)

    logging.captureWarnings(True)
