import copy
import logging
import time
from typing import Any, Dict, Optional, Tuple
from .models import LocationSource

logger = logging.getLogger(__name__)


def report_key(event_id: str, source: str) -> str:
    return f"report:{event_id}:{source}"


class InMemoryReportCache:
    """
    Short-lived cache of event report snapshots, kept in process memory.
    Used when REDIS_URL is not configured.

    Shared by the API worker threads: keys are only ever read, set or
    popped one at a time, never iterated. Reports are copied in and out
    so callers cannot modify a cached snapshot.
    """

    def __init__(self, ttl_seconds: int = 15) -> None:
        self._ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, event_id: str, source: str) -> Optional[Dict[str, Any]]:
        key = report_key(event_id, source)
        cached = self._entries.get(key)
        if cached is None:
            return None
        expires_at, report = cached
        if time.monotonic() >= expires_at:
            self._entries.pop(key, None)
            logger.debug(f"Report cache expired: key={key}")
            return None
        return copy.deepcopy(report)

    def set(self, event_id: str, source: str, report: Dict[str, Any]) -> None:
        if self._ttl_seconds <= 0:
            return
        key = report_key(event_id, source)
        self._entries[key] = (time.monotonic() + self._ttl_seconds, copy.deepcopy(report))

    def invalidate(self, event_id: str) -> None:
        for source in LocationSource:
            self._entries.pop(report_key(event_id, source.value), None)
