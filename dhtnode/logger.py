import logging
from typing import Optional

# Verbosity scale carried in config.json: 0 silent .. 4 debug
VERBOSITY_LEVELS = {
    0: logging.CRITICAL + 10,
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] {label} %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def verbosity_to_level(verbosity: int) -> int:
    """Map a 0-4 verbosity value onto a logging level (clamped)."""
    clamped = max(0, min(4, int(verbosity)))
    return VERBOSITY_LEVELS[clamped]


def configure_logging(
    verbosity: int = 4,
    label: str = "DHTNode",
    handler: Optional[logging.Handler] = None,
) -> logging.Logger:
    """
    Configure the root logger for a node process.

    Returns the package logger with its level set from the verbosity.
    """
    level = verbosity_to_level(verbosity)
    handler = handler or logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(LOG_FORMAT.format(label=label), datefmt=DATE_FORMAT)
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    package_logger = logging.getLogger("dhtnode")
    package_logger.setLevel(level)
    return package_logger
