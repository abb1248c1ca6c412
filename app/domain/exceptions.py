from datetime import datetime

from app.domain.enums import CallAction, CallStatus, ConversationStatus, TransitionAction


class DeskError(Exception):
    """Base class for failures surfaced to callers as structured errors."""


class NotFound(DeskError, LookupError):
    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} '{identifier}' not found")
        self.kind = kind
        self.identifier = identifier


class ConversationNotFound(NotFound):
    def __init__(self, conversation_id: int) -> None:
        super().__init__("Conversation", conversation_id)
        self.conversation_id = conversation_id


class ConversationAccessDenied(DeskError, PermissionError):
    def __init__(self, conversation_id: int) -> None:
        super().__init__(
            f"Conversation '{conversation_id}' is not accessible by the current caller"
        )
        self.conversation_id = conversation_id


class ClosedConversationError(DeskError, ValueError):
    def __init__(self, conversation_id: int) -> None:
        super().__init__(f"Conversation '{conversation_id}' is closed and read-only")
        self.conversation_id = conversation_id


class InvalidConversationTransition(DeskError, ValueError):
    def __init__(self, current: ConversationStatus, action: TransitionAction) -> None:
        super().__init__(
            f"Cannot apply action '{action.value}' from state '{current.value}'."
        )
        self.current = current
        self.action = action


class SlotConflict(DeskError, ValueError):
    def __init__(self, slot_time: datetime, reason: str = "already reserved") -> None:
        super().__init__(f"Slot {slot_time.isoformat()} is not available: {reason}")
        self.slot_time = slot_time
        self.reason = reason


class CapacityExceeded(DeskError, ValueError):
    def __init__(self, agent_id: str, limit: int) -> None:
        super().__init__(
            f"Agent '{agent_id}' already holds {limit} active conversation(s)"
        )
        self.agent_id = agent_id
        self.limit = limit


class StaleCallSignal(DeskError, ValueError):
    def __init__(self, current: CallStatus, action: CallAction, detail: str = "") -> None:
        message = f"Call action '{action.value}' is not valid while call is '{current.value}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.current = current
        self.action = action


class TransientIOError(DeskError, IOError):
    """A storage or transport collaborator failed in a way worth retrying."""
