"""Durable queue of turns whose inference failed with a transient error.

Row lifecycle: PENDING -> PROCESSING -> DELIVERED | DISCARDED, or back to
PENDING (at the end of the queue) when the retry fails transiently again.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from salesbot.logging_config import get_logger
from salesbot.models import RetryEntry

logger = get_logger("retry_queue")

PENDING = "PENDING"
PROCESSING = "PROCESSING"
DELIVERED = "DELIVERED"
DISCARDED = "DISCARDED"


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class QueuedTurn:
    id: str
    session_id: str
    source_message_id: Optional[str]
    parts: list
    enqueued_at: datetime
    attempts: int
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: RetryEntry) -> "QueuedTurn":
        payload = row.payload_json or {}
        return cls(
            id=row.id,
            session_id=row.conversation_id,
            source_message_id=row.source_message_id,
            parts=list(payload.get("parts") or []),
            enqueued_at=_ensure_timezone(row.enqueued_at),
            attempts=row.attempts or 0,
            last_error=row.last_error,
        )


class RetryQueue:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def enqueue(
        self,
        *,
        session_id: str,
        parts: list,
        source_message_id: Optional[str] = None,
        error: Optional[str] = None,
        enqueued_at: Optional[datetime] = None,
    ) -> QueuedTurn:
        now = datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            row = RetryEntry(
                conversation_id=session_id,
                source_message_id=source_message_id,
                payload_json={"parts": parts},
                status=PENDING,
                attempts=0,
                last_error=(error or "")[:500] or None,
                enqueued_at=enqueued_at or now,
                queued_at=now,
                updated_at=now,
            )
            db.add(row)
            db.commit()
            entry = QueuedTurn.from_row(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(
            "Turn queued for retry",
            extra={"context": {"session_id": session_id, "entry_id": entry.id, "error": error}},
        )
        return entry

    def claim_pending(self, *, limit: Optional[int] = None) -> list[QueuedTurn]:
        """Take every pending entry out of the queue, oldest first, marking it PROCESSING."""
        now = datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            query = db.query(RetryEntry).filter(RetryEntry.status == PENDING).order_by(RetryEntry.queued_at)
            if limit:
                query = query.limit(limit)
            rows = query.all()
            for row in rows:
                row.status = PROCESSING
                row.attempts = (row.attempts or 0) + 1
                row.updated_at = now
            db.commit()
            return [QueuedTurn.from_row(row) for row in rows]
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def mark_delivered(self, entry_id: str) -> None:
        self._mark(entry_id, DELIVERED)

    def discard(self, entry_id: str, reason: str) -> None:
        self._mark(entry_id, DISCARDED, last_error=reason)

    def requeue(self, entry_id: str, error: str) -> None:
        """Put the entry back at the end of the queue. enqueued_at is kept."""
        self._mark(entry_id, PENDING, last_error=error, requeue=True)

    def pending(self) -> list[QueuedTurn]:
        db = self._session_factory()
        try:
            rows = db.query(RetryEntry).filter(RetryEntry.status == PENDING).order_by(RetryEntry.queued_at).all()
            return [QueuedTurn.from_row(row) for row in rows]
        finally:
            db.close()

    def release_stale_processing(self) -> int:
        """Return entries left PROCESSING by a crashed sweep to the queue."""
        db = self._session_factory()
        try:
            rows = db.query(RetryEntry).filter(RetryEntry.status == PROCESSING).all()
            for row in rows:
                row.status = PENDING
                row.updated_at = datetime.now(timezone.utc)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if rows:
            logger.warning(f"Released {len(rows)} stale retry entries")
        return len(rows)

    def _mark(self, entry_id: str, status: str, *, last_error: Optional[str] = None, requeue: bool = False) -> None:
        now = datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            row = db.get(RetryEntry, entry_id)
            if row is None:
                logger.warning(f"Retry entry {entry_id} not found")
                return
            row.status = status
            row.updated_at = now
            if last_error is not None:
                row.last_error = last_error[:500]
            if requeue:
                row.queued_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
