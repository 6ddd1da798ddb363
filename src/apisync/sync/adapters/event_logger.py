"""Notification subscriber that writes engine events to the standard logger."""

import logging

from ..config import LOG_LEVELS
from ..domain.events import EventDispatcher, EventKind, SyncEvent

logger = logging.getLogger("apisync")

_SEVERITY = {
    EventKind.ERROR: 0,
    EventKind.WARNING: 1,
    EventKind.NOTICE: 2,
}


class LoggingSubscriber:
    """Logs ERROR, WARNING and NOTICE notifications.

    ``log_level`` is the most verbose severity written: "error" logs errors
    only, "warning" adds warnings, "notice" logs all three.
    """

    def __init__(self, log_level: str = "error"):
        if log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        self.log_level = log_level
        self._threshold = LOG_LEVELS.index(log_level)

    def attach(self, dispatcher: EventDispatcher) -> "LoggingSubscriber":
        for kind in _SEVERITY:
            dispatcher.subscribe(kind, self)
        return self

    def __call__(self, kind: EventKind, event: SyncEvent) -> None:
        severity = _SEVERITY.get(kind)
        if severity is None or severity > self._threshold:
            return

        message = event.format()
        if kind == EventKind.ERROR:
            if event.error is not None:
                message = f"{message}: {event.error}"
            logger.error(message)
        elif kind == EventKind.WARNING:
            if event.error is not None:
                message = f"{message}: {event.error}"
            logger.warning(message)
        else:
            logger.info(message)
