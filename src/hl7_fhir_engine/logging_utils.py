# src/hl7_fhir_engine/logging_utils.py
"""
Logging utilities for hl7_fhir_engine.

Provides a single entry point to configure root logging for CLI and library
use, plus a small context mechanism that stamps every log record emitted
during a conversion with the control id (MSH-10) of the message being
converted.
"""

from __future__ import annotations

import contextvars
import logging
import sys
from contextlib import contextmanager
from typing import IO, Iterator, Optional


_VERBOSITY_LEVELS = {
    0: logging.INFO,
    1: logging.DEBUG,  # any value >= 1 maps to DEBUG
}

_NO_MESSAGE = "-"

_MESSAGE_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "hl7_fhir_engine_message_id", default=_NO_MESSAGE
)


class MessageContextFilter(logging.Filter):
    """
    Attach ``message_id`` to every record passing through a handler.

    Records logged outside of ``message_context`` get ``"-"``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.message_id = _MESSAGE_ID.get()
        return True


@contextmanager
def message_context(message_id: Optional[str]) -> Iterator[None]:
    """
    Bind a message control id to log records for the duration of the block.

    Parameters
    ----------
    message_id : str or None
        Control id of the message being converted. None or "" leaves the
        placeholder in place.

    Yields
    ------
    None
    """
    token = _MESSAGE_ID.set(message_id or _NO_MESSAGE)
    try:
        yield
    finally:
        _MESSAGE_ID.reset(token)


def current_message_id() -> str:
    """Return the control id bound by the innermost ``message_context``."""
    return _MESSAGE_ID.get()


def configure_logging(
    verbosity: int = 0, stream: Optional[IO[str]] = None
) -> logging.Logger:
    """
    Configure application-wide logging.

    Parameters
    ----------
    verbosity : int, default=0
        Verbosity level:
        - 0 -> INFO
        - 1 or higher -> DEBUG
        Must be a non-negative integer.
    stream : IO[str] or None, default=None
        Target stream for the StreamHandler. Defaults to sys.stdout if None.

    Returns
    -------
    logging.Logger
        The configured root logger.

    Raises
    ------
    TypeError
        If verbosity is not an int, or if a stream is provided that does not
        have a write method.
    ValueError
        If verbosity is negative.
    """
    if not isinstance(verbosity, int):
        raise TypeError(f"verbosity must be int, got {type(verbosity).__name__}")
    if verbosity < 0:
        raise ValueError(f"verbosity must be non-negative, got {verbosity}")

    level = _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)

    if stream is None:
        stream = sys.stdout
    elif not hasattr(stream, "write"):
        raise TypeError("stream must be file-like (support .write(...))")

    fmt = "%(asctime)s %(levelname)s %(name)s [%(message_id)s]: %(message)s"
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(MessageContextFilter())

    root = logging.getLogger()
    # Replace only existing StreamHandlers; leave other handlers intact (e.g.,
    #   FileHandler)
    root.handlers = [
        h for h in root.handlers if not isinstance(h, logging.StreamHandler)
    ]
    root.addHandler(handler)
    root.setLevel(level)

    return root
