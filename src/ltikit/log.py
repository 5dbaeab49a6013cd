"""
Logging helpers.

Protocol decisions (rejected signatures, replayed nonces, token failures)
are logged at a dedicated ``LTI`` level that sits between DEBUG and INFO,
so a deployment can trace launches without turning on full debug output.
"""

from __future__ import annotations

import logging

LTI = 15

logging.addLevelName(LTI, "LTI")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def log_lti(logger: logging.Logger, msg: str, *args) -> None:
    """Log ``msg`` at the LTI level."""
    if logger.isEnabledFor(LTI):
        logger.log(LTI, msg, *args)


def configure_logging(level: str | int = "INFO") -> None:
    """Install a stream handler on the root logger.

    ``level`` accepts standard level names as well as ``"LTI"``.
    """
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("ltikit").setLevel(level)
