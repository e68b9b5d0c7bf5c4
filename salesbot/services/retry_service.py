from dataclasses import asdict, dataclass

from salesbot.logging_config import get_logger
from salesbot.services.conversation_service import ConversationOrchestrator, ReplayStatus
from salesbot.services.retry_queue import RetryQueue

logger = get_logger("retry_service")


@dataclass
class SweepResult:
    claimed: int = 0
    delivered: int = 0
    requeued: int = 0
    discarded: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class RetrySweeper:
    """One pass over the retry queue.

    Everything pending is claimed up front, so an entry that fails again is
    requeued for the next tick and never attempted twice in the same one.
    """

    def __init__(self, queue: RetryQueue, orchestrator: ConversationOrchestrator, *, max_attempts: int = 10):
        self.queue = queue
        self.orchestrator = orchestrator
        self.max_attempts = max_attempts

    async def sweep(self) -> SweepResult:
        result = SweepResult()
        if not self.orchestrator.gateway.configured:
            logger.warning("Retry sweep skipped: inference provider not configured")
            return result

        entries = self.queue.claim_pending()
        result.claimed = len(entries)

        for entry in entries:
            if self.max_attempts and entry.attempts > self.max_attempts:
                self.queue.discard(entry.id, f"max_attempts_exceeded: {entry.last_error or ''}")
                logger.warning(
                    "Retry entry dropped after too many attempts",
                    extra={"context": {"entry_id": entry.id, "session_id": entry.session_id, "attempts": entry.attempts}},
                )
                result.discarded += 1
                continue

            try:
                status = await self.orchestrator.replay(entry)
            except Exception as exc:
                logger.error(
                    "Retry entry failed unexpectedly, requeued",
                    exc_info=True,
                    extra={"context": {"entry_id": entry.id, "session_id": entry.session_id}},
                )
                self.queue.requeue(entry.id, str(exc))
                status = ReplayStatus.REQUEUED

            if status == ReplayStatus.DELIVERED:
                result.delivered += 1
            elif status == ReplayStatus.REQUEUED:
                result.requeued += 1
            else:
                result.discarded += 1

        still_dirty = self.orchestrator.store.flush_pending()
        if still_dirty:
            logger.warning(f"{still_dirty} sessions still not persisted")

        if result.claimed:
            logger.info("Retry sweep finished", extra={"context": result.as_dict()})
        return result
