# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Structured events emitted by the load balancer engine.

Every engine component receives an :class:`EventSink` instead of writing to a
module logger directly. Production code uses :class:`LoggingEventSink`; tests
pass a recording sink and assert on the events.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receiver for engine events."""

    def emit(self, event: str, *, level: int = logging.INFO, **fields: object) -> None:
        """Record one event with its key/value fields."""
        ...


class LoggingEventSink:
    """Event sink that forwards events to the standard logging module."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def emit(self, event: str, *, level: int = logging.INFO, **fields: object) -> None:
        detail = " ".join(f"{key}={fields[key]}" for key in sorted(fields))
        if detail:
            self._log.log(level, "%s (%s)", event, detail)
        else:
            self._log.log(level, "%s", event)
