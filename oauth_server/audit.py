"""
Audit logging for security-relevant events. No tokens, secrets or verifiers are ever recorded.

emit() never blocks a request: records go into a bounded queue drained by a small pool of worker
threads that write them to the audit_log table. When the queue is full the record is dropped and
counted. A failed write is retried (at-least-once) before being given up on.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from oauth_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_INTROSPECT = "introspect"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

_STOP = object()


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    outcome: str
    created_at: datetime
    client_id: str | None = None
    user_id: str | None = None
    ip: str | None = None
    error_code: str | None = None


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are a deployment concern."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


class AuditQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        maxsize: int = 1000,
        workers: int = 2,
        max_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._workers = workers
        self._max_attempts = max_attempts
        self._threads: list[threading.Thread] = []
        self._counter_lock = threading.Lock()
        self.dropped = 0
        self.failed = 0
        self.written = 0

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._threads = [
            threading.Thread(target=self._run, name=f"audit-worker-{i}", daemon=True)
            for i in range(self._workers)
        ]
        for t in self._threads:
            t.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the workers."""
        if not self._threads:
            return
        for _ in self._threads:
            # Blocking put: stop() runs at shutdown, never on a request path
            self._queue.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def join(self) -> None:
        """Wait until every queued record has been handled (tests)."""
        self._queue.join()

    def emit(
        self,
        event_type: str,
        *,
        client_id: str | None = None,
        user_id: str | None = None,
        ip: str | None = None,
        outcome: str = OUTCOME_SUCCESS,
        error_code: str | None = None,
    ) -> bool:
        """Queue one record. Returns False when the queue was full and the record was dropped."""
        record = AuditRecord(
            event_type=event_type,
            outcome=outcome,
            created_at=datetime.now(timezone.utc),
            client_id=client_id,
            user_id=user_id,
            ip=ip,
            error_code=error_code,
        )
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            with self._counter_lock:
                self.dropped += 1
                dropped = self.dropped
            logger.warning("Audit queue full; dropped %s event (%s dropped so far)", event_type, dropped)
            return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, record: AuditRecord) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._write(record)
            except SQLAlchemyError as e:
                logger.warning(
                    "Audit write failed (attempt %s/%s): %s", attempt, self._max_attempts, e.__class__.__name__
                )
                continue
            with self._counter_lock:
                self.written += 1
            return
        with self._counter_lock:
            self.failed += 1
        logger.error("Audit record %s lost after %s attempts", record.event_type, self._max_attempts)

    def _write(self, record: AuditRecord) -> None:
        with self._session_factory() as db:
            db.add(
                AuditLog(
                    created_at=record.created_at,
                    event_type=record.event_type,
                    client_id=record.client_id,
                    user_id=record.user_id,
                    ip=record.ip,
                    outcome=record.outcome,
                    error_code=record.error_code,
                )
            )
            db.commit()
