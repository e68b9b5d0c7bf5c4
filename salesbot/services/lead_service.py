"""Batch lead classification over recent conversations.

One structured-output model call per run. Results are merged into the
lead_entries table keyed by (category, phone); the watermark on every
analyzed session moves to the run time.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from salesbot.logging_config import get_logger
from salesbot.models import LeadAnalysisRun, LeadEntry
from salesbot.schemas.chat import ChatSession, Sender
from salesbot.schemas.leads import LEAD_CATEGORIES, AnalyzedLead, LeadAnalysis, LeadAnalysisResponse
from salesbot.services.ai_service import InferenceGateway
from salesbot.services.llm import ProviderError
from salesbot.services.session_store import SessionStore, _ensure_timezone

logger = get_logger("lead_service")

RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_SKIPPED = "skipped"

_LEAD_ITEM_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "phone": {"type": "STRING"},
        "name": {"type": "STRING"},
        "reason": {"type": "STRING"},
    },
    "required": ["phone", "reason"],
}

LEAD_SCHEMA = {
    "type": "OBJECT",
    "properties": {category: {"type": "ARRAY", "items": _LEAD_ITEM_SCHEMA} for category in LEAD_CATEGORIES},
    "required": list(LEAD_CATEGORIES),
}

LEAD_SYSTEM_INSTRUCTION = (
    "You review WhatsApp sales conversations for a vending machine business and sort customers into lead lists."
)

_SPEAKERS = {
    Sender.COUNTERPART: "Customer",
    Sender.BOT: "Agent",
    Sender.HUMAN_OPERATOR: "Staff",
}


class LeadAnalysisError(Exception):
    """The run did not complete; the cached leads are unchanged."""


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "") or (value or "").strip()


def format_transcript(session: ChatSession, max_messages: int) -> str:
    lines = [f"PHONE: {session.id} | NAME: {session.display_name}"]
    for message in session.messages[-max_messages:]:
        content = message.text or ""
        if message.image:
            content = f"[Photo] {content}".strip()
        lines.append(f"{_SPEAKERS[message.sender]}: {content}")
    return "\n".join(lines)


def build_lead_prompt(sessions: list[ChatSession], max_messages: int) -> str:
    transcripts = "\n\n---\n\n".join(format_transcript(s, max_messages) for s in sessions)
    return f"""Classify each customer below into at most one list:
- serious: clearly wants to buy soon (asked for payment details, negotiated price, confirmed specs).
- stalled: was interested but stopped replying or went quiet after the price.
- visiting: plans to come to the shop or asked for the location.
- followUp: needs a call or message from the team (open question, asked to be reminded).
Leave out customers that fit none of these. Use the PHONE exactly as given and give a short reason.

CONVERSATIONS:
{transcripts}"""


class LeadAnalyzer:
    def __init__(
        self,
        store: SessionStore,
        gateway: InferenceGateway,
        session_factory: Callable[[], Session],
        *,
        batch_size: int = 20,
        min_messages: int = 3,
        transcript_messages: int = 15,
        cooldown_seconds: float = 3600.0,
    ):
        self.store = store
        self.gateway = gateway
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.min_messages = min_messages
        self.transcript_messages = transcript_messages
        self.cooldown_seconds = cooldown_seconds

    def select_candidates(self, *, force: bool = False) -> list[ChatSession]:
        """Sessions with enough history, changed since their watermark unless forced.

        Most recently active first, capped at the batch size.
        """
        candidates = []
        for session in self.store.list_sessions():
            if len(session.messages) < self.min_messages:
                continue
            if not force and session.last_analyzed_time is not None:
                if session.last_message_time <= session.last_analyzed_time:
                    continue
            candidates.append(session)
        return candidates[: self.batch_size]

    async def analyze(self, *, force: bool = False) -> LeadAnalysisResponse:
        started_at = datetime.now(timezone.utc)

        if not force:
            last_run = self.last_completed_at()
            if last_run is not None and started_at - last_run < timedelta(seconds=self.cooldown_seconds):
                logger.info("Lead analysis skipped, analyzed recently", extra={"context": {"last_run": last_run}})
                return self.get_cached(skipped=True)

        candidates = self.select_candidates(force=force)
        if not candidates:
            logger.info("Lead analysis skipped, no new conversations")
            self._record_run(RUN_SKIPPED, force, 0, started_at)
            return self.get_cached(skipped=True)

        logger.info(f"Analyzing {len(candidates)} conversations for leads", extra={"context": {"force": force}})
        prompt = build_lead_prompt(candidates, self.transcript_messages)
        try:
            raw = await self.gateway.complete_json(prompt, LEAD_SCHEMA, system_instruction=LEAD_SYSTEM_INSTRUCTION)
            analysis = LeadAnalysis.model_validate(raw)
        except (ProviderError, ValidationError) as exc:
            self._record_run(RUN_FAILED, force, 0, started_at, error=str(exc))
            logger.error("Lead analysis failed", extra={"context": {"error": str(exc)}})
            raise LeadAnalysisError(str(exc)) from exc

        self._merge(analysis, candidates, force, started_at)
        self.store.mark_analyzed([s.id for s in candidates], started_at)
        return self.get_cached(analyzed_sessions=len(candidates))

    def _merge(
        self, analysis: LeadAnalysis, candidates: list[ChatSession], force: bool, started_at: datetime
    ) -> None:
        """Upsert each (category, phone); the run record commits in the same transaction."""
        by_phone = {_digits(s.id): s for s in candidates}
        db = self._session_factory()
        try:
            merged = 0
            for category in LEAD_CATEGORIES:
                for lead in getattr(analysis, category):
                    session = by_phone.get(_digits(lead.phone))
                    if session is None:
                        logger.warning(f"Lead for unknown phone ignored: {lead.phone}")
                        continue
                    self._upsert(db, category, session, lead, started_at)
                    merged += 1
            db.add(
                LeadAnalysisRun(
                    status=RUN_COMPLETED,
                    forced=force,
                    sessions_analyzed=len(candidates),
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("Lead merge failed", extra={"context": {"error": str(exc)}})
            raise LeadAnalysisError(f"Lead merge failed: {exc}") from exc
        finally:
            db.close()
        logger.info(f"Lead analysis merged {merged} leads")

    @staticmethod
    def _upsert(db: Session, category: str, session: ChatSession, lead: AnalyzedLead, at: datetime) -> None:
        row = db.query(LeadEntry).filter(LeadEntry.category == category, LeadEntry.phone == session.id).first()
        if row is None:
            row = LeadEntry(category=category, phone=session.id)
            db.add(row)
        row.name = lead.name or session.display_name
        row.reason = lead.reason
        row.updated_at = at
        # the same phone may come back twice in one category
        db.flush()

    def get_cached(self, *, skipped: bool = False, analyzed_sessions: int = 0) -> LeadAnalysisResponse:
        db = self._session_factory()
        try:
            rows = db.query(LeadEntry).order_by(LeadEntry.updated_at.desc()).all()
        finally:
            db.close()
        lists: dict[str, list[AnalyzedLead]] = {category: [] for category in LEAD_CATEGORIES}
        for row in rows:
            if row.category in lists:
                lists[row.category].append(AnalyzedLead(phone=row.phone, name=row.name, reason=row.reason))
        return LeadAnalysisResponse(
            **lists,
            last_updated=self.last_completed_at(),
            analyzed_sessions=analyzed_sessions,
            skipped=skipped,
        )

    def last_completed_at(self) -> Optional[datetime]:
        db = self._session_factory()
        try:
            run = (
                db.query(LeadAnalysisRun)
                .filter(LeadAnalysisRun.status == RUN_COMPLETED)
                .order_by(LeadAnalysisRun.finished_at.desc())
                .first()
            )
            return _ensure_timezone(run.finished_at) if run else None
        finally:
            db.close()

    def _record_run(
        self, status: str, force: bool, analyzed: int, started_at: datetime, error: Optional[str] = None
    ) -> None:
        db = self._session_factory()
        try:
            db.add(
                LeadAnalysisRun(
                    status=status,
                    forced=force,
                    sessions_analyzed=analyzed,
                    error=(error or "")[:500] or None,
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
