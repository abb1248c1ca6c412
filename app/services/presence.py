from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.domain.entities import utc_now


@dataclass(slots=True)
class AgentPresence:
    agent_id: str
    online: bool
    last_heartbeat_at: datetime


class PresenceTracker:
    """Process-wide view of which agents are online.

    Pure lookup and mutation with no awaits, so every call is atomic with
    respect to the event loop.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._agents: dict[str, AgentPresence] = {}

    def heartbeat(self, agent_id: str) -> bool:
        """Mark the agent online; returns True when it was offline before."""
        now = self._clock()
        presence = self._agents.get(agent_id)
        if presence is None:
            self._agents[agent_id] = AgentPresence(agent_id, True, now)
            return True
        came_online = not presence.online
        presence.online = True
        presence.last_heartbeat_at = now
        return came_online

    def mark_offline(self, agent_id: str) -> bool:
        presence = self._agents.get(agent_id)
        if presence is None or not presence.online:
            return False
        presence.online = False
        return True

    def sweep_stale(self, max_age: timedelta) -> list[str]:
        """Take agents whose last heartbeat is older than max_age offline."""
        cutoff = self._clock() - max_age
        stale = [
            presence.agent_id
            for presence in self._agents.values()
            if presence.online and presence.last_heartbeat_at < cutoff
        ]
        for agent_id in stale:
            self._agents[agent_id].online = False
        return stale

    def is_online(self, agent_id: str) -> bool:
        presence = self._agents.get(agent_id)
        return presence is not None and presence.online

    def online_count(self) -> int:
        return sum(1 for presence in self._agents.values() if presence.online)

    def online_agents(self) -> list[str]:
        return sorted(
            presence.agent_id for presence in self._agents.values() if presence.online
        )

    def get(self, agent_id: str) -> AgentPresence | None:
        return self._agents.get(agent_id)
