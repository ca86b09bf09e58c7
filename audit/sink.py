"""
audit/sink.py -- Fire-and-forget audit recorder.

record() validates the record, stamps its timestamp and hands it to a
background writer thread through a bounded queue.Queue, then returns. It
never raises: an invalid record, a full queue or a failing store are observed
only through the "admingate.audit" logger and the sink's counters. Audit
failure must not change the outcome of the operation it describes.

Writes are best-effort; reads go to AuditStore directly and see whatever has
been durably written. flush() blocks until everything queued so far has been
attempted, which is what tests and shutdown need.

The writer is a thread rather than an asyncio task because the store is
synchronous SQLAlchemy and most callers run in FastAPI's threadpool.

Usage:
    sink = AuditSink(AuditStore())
    sink.start()
    sink.record(user.id, "login", "auth", {"login_method": "password"}, origin)
    sink.close()
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Optional

from audit.models import ACTIONS, RESOURCES, SEVERITIES, STATUSES, AuditRecord
from audit.store import AuditStore, now_iso
from auth.models import RequestOrigin

logger = logging.getLogger("admingate.audit")

_STOP = object()


class AuditSink:
    def __init__(self, store: AuditStore, max_queue: int = 10_000) -> None:
        self._store = store
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.written = 0
        self.failed = 0
        self.dropped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the writer thread. Safe to call more than once."""
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="audit-writer", daemon=True)
            self._thread.start()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued record has been written or has failed.

        Returns False if the timeout expired first.
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Flush, stop the writer thread and wait for it to exit."""
        if self._thread is None:
            return
        self.flush(timeout)
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        user_id: Optional[int],
        action: str,
        resource: str,
        details: Optional[dict[str, Any]] = None,
        origin: Optional[RequestOrigin] = None,
        status: str = "success",
        severity: str = "low",
        resource_id: Optional[str] = None,
    ) -> None:
        """Queue one audit record. Never raises."""
        try:
            if action not in ACTIONS or resource not in RESOURCES:
                logger.error("Dropping audit record with unknown action/resource: %s/%s", action, resource)
                self.dropped += 1
                return
            if status not in STATUSES or severity not in SEVERITIES:
                logger.error("Dropping audit record %s with bad status/severity: %s/%s", action, status, severity)
                self.dropped += 1
                return
            origin = origin or RequestOrigin()
            details = dict(details or {})
            if resource_id is None and "resource_id" in details:
                resource_id = str(details["resource_id"])
            item = AuditRecord(
                user_id=user_id,
                action=action,
                resource=resource,
                resource_id=resource_id,
                details=details,
                ip_address=origin.ip_address or "unknown",
                user_agent=origin.user_agent or "unknown",
                status=status,
                severity=severity,
                created_at=now_iso(),
            )
            self.start()
            self._queue.put_nowait(item)
        except queue.Full:
            self.dropped += 1
            logger.warning("Audit queue full; dropped %s record", action)
        except Exception:
            self.dropped += 1
            logger.exception("Audit record for %s could not be queued", action)

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._store.insert(item)
                self.written += 1
            except Exception:
                self.failed += 1
                logger.exception("Audit write failed for %s (user=%s)", item.action, item.user_id)
            finally:
                self._queue.task_done()
