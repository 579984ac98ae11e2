import logging
import os
from typing import Optional


ROOT_LOGGER = "batchcheck"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def _coerce_level(value: Optional[str]) -> int:
    if not value:
        return logging.INFO
    return _LEVELS.get(value.upper().strip(), logging.INFO)


def _configure_root() -> logging.Logger:
    """Attach handlers to the ``batchcheck`` logger, once per process.

    Level comes from LOG_LEVEL (default INFO). LOG_FILE adds an appending file
    handler next to stdout.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if getattr(root, "_batchcheck_configured", False):
        return root

    root.setLevel(_coerce_level(os.environ.get("LOG_LEVEL")))
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)

    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            root.warning(f"LOG_FILE {log_file!r} could not be opened ({exc}); logging to stdout only")
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    # Host applications (uvicorn, pytest) keep their own root handlers.
    root.propagate = False
    setattr(root, "_batchcheck_configured", True)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return ``batchcheck.<name>``; records propagate to the shared package logger."""
    _configure_root()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
