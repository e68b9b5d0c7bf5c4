from enum import Enum


class BotState(str, Enum):
    BOT_ACTIVE = "bot_active"  # pipeline may answer automatically
    PAUSED = "paused"  # a human switched the bot off
    ESCALATED = "escalated"  # locked by the escalation tool, waiting for a human


VALID_TRANSITIONS = {
    BotState.BOT_ACTIVE: [BotState.ESCALATED, BotState.PAUSED],
    BotState.PAUSED: [BotState.BOT_ACTIVE, BotState.ESCALATED],
    BotState.ESCALATED: [BotState.BOT_ACTIVE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: BotState, to_state: BotState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def state_of(bot_active: bool, is_escalated: bool) -> BotState:
    """Derive the lock state from the two persisted flags."""
    if bot_active:
        return BotState.BOT_ACTIVE
    if is_escalated:
        return BotState.ESCALATED
    return BotState.PAUSED


def flags_for(state: BotState) -> tuple[bool, bool]:
    """Return (bot_active, is_escalated) for a state. Both flags always move together."""
    if state == BotState.BOT_ACTIVE:
        return True, False
    if state == BotState.ESCALATED:
        return False, True
    return False, False


def can_transition(from_state: BotState, to_state: BotState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: BotState, to_state: BotState) -> BotState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def escalate(current_state: BotState) -> BotState:
    """Escalation tool fired: lock the bot and raise the flag."""
    return transition(current_state, BotState.ESCALATED)


def release(current_state: BotState) -> BotState:
    """Human hands the conversation back to the bot; clears the escalation flag."""
    return transition(current_state, BotState.BOT_ACTIVE)


def pause(current_state: BotState) -> BotState:
    """Human switches the bot off without an escalation."""
    return transition(current_state, BotState.PAUSED)
