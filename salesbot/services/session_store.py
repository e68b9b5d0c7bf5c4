"""Conversation store: in-memory sessions backed by a SQL repository.

The in-memory map is authoritative for the running process. Every mutation is
flushed to the repository right away; a failed flush is logged and retried on
the next mutation of the same session, so nothing appended is ever dropped.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from salesbot.logging_config import get_logger
from salesbot.models import Conversation, Message
from salesbot.schemas.chat import ChatMessage, ChatSession, MessageType, Sender
from salesbot.services.state_machine import BotState, escalate, flags_for, pause, release, state_of

logger = get_logger("session_store")


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


def _ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SessionRepository:
    """Reads and writes sessions through SQLAlchemy."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def load_all(self) -> list[ChatSession]:
        db = self._session_factory()
        try:
            sessions = []
            for row in db.query(Conversation).all():
                messages = [
                    ChatMessage(
                        id=m.message_id,
                        sender=Sender(m.sender),
                        timestamp=_ensure_timezone(m.created_at),
                        type=MessageType(m.message_type),
                        text=m.text,
                        image=m.image,
                    )
                    for m in row.messages
                ]
                sessions.append(
                    ChatSession(
                        id=row.id,
                        display_name=row.display_name,
                        messages=messages,
                        last_message=row.last_message or "",
                        last_message_time=_ensure_timezone(row.last_message_at),
                        unread_count=row.unread_count or 0,
                        bot_active=bool(row.bot_active),
                        is_escalated=bool(row.is_escalated),
                        last_analyzed_time=_ensure_timezone(row.last_analyzed_at),
                    )
                )
            return sessions
        finally:
            db.close()

    def save(self, session: ChatSession, new_messages: Sequence[ChatMessage]) -> None:
        """Upsert the session row and insert messages not yet written."""
        db = self._session_factory()
        try:
            row = db.get(Conversation, session.id)
            if row is None:
                row = Conversation(id=session.id, created_at=datetime.now(timezone.utc))
                db.add(row)
            row.display_name = session.display_name
            row.last_message = session.last_message
            row.last_message_at = session.last_message_time
            row.unread_count = session.unread_count
            row.bot_active = session.bot_active
            row.is_escalated = session.is_escalated
            row.last_analyzed_at = session.last_analyzed_time

            for message in new_messages:
                db.add(
                    Message(
                        conversation_id=session.id,
                        message_id=message.id,
                        sender=message.sender.value,
                        message_type=message.type.value,
                        text=message.text,
                        image=message.image,
                        created_at=message.timestamp,
                    )
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class SessionStore:
    """Single owner of session state. Other components go through these methods."""

    def __init__(self, repository: Optional[SessionRepository] = None):
        self._repository = repository
        self._sessions: dict[str, ChatSession] = {}
        self._persisted_counts: dict[str, int] = {}
        self._dirty: set[str] = set()

    def load(self) -> int:
        """Replace the in-memory map with what the repository holds.

        A missing or unreadable store starts empty.
        """
        if self._repository is None:
            return 0
        try:
            sessions = self._repository.load_all()
        except Exception as exc:
            logger.error(
                "Session load failed, starting with an empty store",
                extra={"context": {"error": str(exc)}},
            )
            sessions = []
        self._sessions = {s.id: s for s in sessions}
        self._persisted_counts = {s.id: len(s.messages) for s in sessions}
        self._dirty.clear()
        logger.info(f"Loaded history for {len(self._sessions)} contacts")
        return len(self._sessions)

    # -- reads -------------------------------------------------------------

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[ChatSession]:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    def require(self, session_id: str) -> ChatSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def has_message(self, session_id: str, message_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return any(m.id == message_id for m in session.messages)

    def list_sessions(self) -> list[ChatSession]:
        """Snapshot of every session, most recently active first."""
        sessions = [s.snapshot() for s in self._sessions.values()]
        sessions.sort(key=lambda s: s.last_message_time, reverse=True)
        return sessions

    # -- mutations ---------------------------------------------------------

    def get_or_create(self, session_id: str, display_name: Optional[str] = None) -> ChatSession:
        """Return the session, creating it unlocked with empty history.

        A non-empty display name refreshes the stored label.
        """
        session = self._sessions.get(session_id)
        if session is None:
            session = ChatSession(
                id=session_id,
                display_name=display_name or f"Client {session_id}",
                last_message_time=datetime.now(timezone.utc),
                bot_active=True,
                is_escalated=False,
            )
            self._sessions[session_id] = session
            self._persisted_counts[session_id] = 0
            logger.info("Session created", extra={"context": {"session_id": session_id}})
            self._flush(session)
        elif display_name and display_name != session.display_name:
            session.display_name = display_name
            self._flush(session)
        return session.snapshot()

    def append_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        """Append to history, refresh the summary fields and flush."""
        session = self._live(session_id)

        if session.messages and message.timestamp < session.messages[-1].timestamp:
            message = message.model_copy(update={"timestamp": session.messages[-1].timestamp})

        session.messages.append(message)
        session.last_message = message.summary
        session.last_message_time = message.timestamp
        if message.sender == Sender.COUNTERPART:
            session.unread_count += 1
        elif message.sender == Sender.HUMAN_OPERATOR:
            session.unread_count = 0

        self._flush(session)
        return message

    def set_bot_active(self, session_id: str, active: bool) -> ChatSession:
        """Admin toggle. Turning the bot on is the only way to clear an escalation."""
        session = self._live(session_id)
        current = state_of(session.bot_active, session.is_escalated)

        if active and current != BotState.BOT_ACTIVE:
            self._apply(session, release(current))
            logger.info("Bot released", extra={"context": {"session_id": session_id, "from": current.value}})
        elif not active and current == BotState.BOT_ACTIVE:
            self._apply(session, pause(current))
            logger.info("Bot paused by operator", extra={"context": {"session_id": session_id}})
        return session.snapshot()

    def lock_for_escalation(self, session_id: str) -> ChatSession:
        """Set bot_active=False and is_escalated=True in one step."""
        session = self._live(session_id)
        current = state_of(session.bot_active, session.is_escalated)
        if current != BotState.ESCALATED:
            self._apply(session, escalate(current))
            logger.info("Session locked for escalation", extra={"context": {"session_id": session_id}})
        return session.snapshot()

    def mark_analyzed(self, session_ids: Iterable[str], analyzed_at: datetime) -> None:
        for session_id in session_ids:
            session = self._sessions.get(session_id)
            if session is None:
                continue
            session.last_analyzed_time = analyzed_at
            self._flush(session)

    def flush_pending(self) -> int:
        """Retry flushing sessions whose last write failed. Returns how many are still dirty."""
        for session_id in list(self._dirty):
            session = self._sessions.get(session_id)
            if session is not None:
                self._flush(session)
        return len(self._dirty)

    # -- internals ---------------------------------------------------------

    def _live(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _apply(self, session: ChatSession, state: BotState) -> None:
        session.bot_active, session.is_escalated = flags_for(state)
        self._flush(session)

    def _flush(self, session: ChatSession) -> None:
        if self._repository is None:
            return
        persisted = self._persisted_counts.get(session.id, 0)
        new_messages = session.messages[persisted:]
        try:
            self._repository.save(session, new_messages)
        except Exception as exc:
            self._dirty.add(session.id)
            logger.error(
                "Session save failed, keeping in-memory state",
                extra={"context": {"session_id": session.id, "error": str(exc)}},
            )
            return
        self._persisted_counts[session.id] = len(session.messages)
        self._dirty.discard(session.id)
