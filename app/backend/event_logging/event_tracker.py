"""
Fire-and-forget product event tracking.

Events (categorization completed, CVs generated, session deleted) are appended
to a JSON Lines file by a single background thread, so disk I/O never sits on
the request path and a failed write never breaks a response.
"""
import json
import logging
import concurrent.futures
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-logger")


class EventTracker:
    def __init__(self, log_file: Optional[str]):
        self.log_file = log_file

    def _write_event_sync(self, event: Dict[str, Any]):
        """Synchronous append, runs on the background thread."""
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(event, default=str) + "\n")
        except OSError as e:
            logger.error('Failed to log event "%s": %s', event.get("event_type"), e)

    def track(self, user_id: Optional[str], event_type: str, metadata: Optional[Dict[str, Any]] = None):
        """Submit the write and return immediately. Never raises."""
        if not self.log_file:
            return
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": user_id,
            "event_type": event_type,
            "metadata": metadata or {},
        }
        _executor.submit(self._write_event_sync, event)

    def flush(self, timeout: float = 5.0):
        """Block until every event submitted so far has been written."""
        _executor.submit(lambda: None).result(timeout=timeout)
