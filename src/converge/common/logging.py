"""Shared logging helpers for converge."""

from __future__ import annotations

import logging
import sys
from typing import Final

_NOISY_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore", "sqlalchemy.engine")


def level_for_verbosity(verbose: int) -> int:
    """Map the number of ``-v`` flags to a logging level."""

    if verbose >= 2:  # noqa: PLR2004
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return logging.WARNING


def configure_logging(*, level: int = logging.INFO, force: bool = False) -> None:
    """Initialise the root logger once with sensible defaults.

    Log records go to stderr so that plans and outputs printed on stdout stay
    machine readable. Pass ``force=True`` to reconfigure during tests or
    specialised entry points.
    """

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
        force=force,
    )
    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
