"""Logging setup and the in-memory buffer behind the ``logs`` tool."""
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional

ROOT_LOGGER = "codeindex"


class RecentEventsHandler(logging.Handler):
    """Keeps the most recent log records as structured events."""

    def __init__(self, max_events: int = 1000, level: int = logging.NOTSET):
        super().__init__(level)
        self._events: deque = deque(maxlen=max_events)
        self._events_lock = threading.Lock()

    def emit(self, record: logging.LogRecord):
        category = record.name
        if category.startswith(ROOT_LOGGER + "."):
            category = category[len(ROOT_LOGGER) + 1 :]
        event = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "category": category,
            "message": record.getMessage(),
        }
        data = getattr(record, "data", None)
        if data is not None:
            event["data"] = data
        with self._events_lock:
            self._events.append(event)

    def events(self, limit: Optional[int] = None, level: Optional[str] = None, category: Optional[str] = None) -> List[Dict]:
        with self._events_lock:
            events = list(self._events)
        if level:
            threshold = logging.getLevelName(level.upper())
            if isinstance(threshold, int):
                events = [e for e in events if logging.getLevelName(e["level"].upper()) >= threshold]
        if category:
            events = [e for e in events if e["category"] == category or e["category"].startswith(category + ".")]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear(self):
        with self._events_lock:
            self._events.clear()


_handler: Optional[RecentEventsHandler] = None
_setup_lock = threading.Lock()


def configure_logging(level: str = "INFO", max_events: int = 1000) -> RecentEventsHandler:
    """Attach the recent-events handler to the package logger once."""
    global _handler
    with _setup_lock:
        logger = logging.getLogger(ROOT_LOGGER)
        logger.setLevel(level.upper())
        if _handler is None:
            _handler = RecentEventsHandler(max_events=max_events)
            logger.addHandler(_handler)
        elif _handler._events.maxlen != max_events:
            with _handler._events_lock:
                _handler._events = deque(_handler._events, maxlen=max_events)
        return _handler


def recent_events(limit: Optional[int] = None, level: Optional[str] = None, category: Optional[str] = None) -> List[Dict]:
    if _handler is None:
        return []
    return _handler.events(limit=limit, level=level, category=category)
