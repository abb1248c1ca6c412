from app.domain.enums import CallParty

QUEUE_CHANNEL = "queue"
PRESENCE_CHANNEL = "presence"


def conversation_channel(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def call_party_channel(conversation_id: int, party: CallParty) -> str:
    return f"conversation:{conversation_id}:{party.value}"


def agent_channel(agent_id: str) -> str:
    return f"agent:{agent_id}"
