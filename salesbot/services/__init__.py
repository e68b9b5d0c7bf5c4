from salesbot.services.conversation_service import (
    ConversationOrchestrator,
    ReplayStatus,
    TurnOutcome,
    TurnStatus,
)
from salesbot.services.retry_queue import QueuedTurn, RetryQueue
from salesbot.services.retry_service import RetrySweeper, SweepResult
from salesbot.services.session_store import SessionNotFoundError, SessionRepository, SessionStore
from salesbot.services.state_machine import (
    BotState,
    InvalidTransitionError,
    can_transition,
    escalate,
    pause,
    release,
    transition,
)
