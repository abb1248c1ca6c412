from datetime import UTC, datetime, timedelta

from app.services.presence import PresenceTracker


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def test_heartbeat_reports_coming_online_once() -> None:
    tracker = PresenceTracker(FakeClock())

    assert tracker.heartbeat("agent-1") is True
    assert tracker.heartbeat("agent-1") is False
    assert tracker.is_online("agent-1")
    assert tracker.online_count() == 1


def test_mark_offline_only_reports_real_transitions() -> None:
    tracker = PresenceTracker(FakeClock())
    tracker.heartbeat("agent-1")

    assert tracker.mark_offline("agent-1") is True
    assert tracker.mark_offline("agent-1") is False
    assert tracker.mark_offline("unknown") is False
    assert tracker.online_count() == 0
    assert tracker.heartbeat("agent-1") is True


def test_sweep_takes_stale_agents_offline() -> None:
    clock = FakeClock()
    tracker = PresenceTracker(clock)
    tracker.heartbeat("agent-old")
    clock.advance(40)
    tracker.heartbeat("agent-fresh")
    clock.advance(10)

    went_offline = tracker.sweep_stale(timedelta(seconds=45))

    assert went_offline == ["agent-old"]
    assert tracker.online_agents() == ["agent-fresh"]
    assert tracker.sweep_stale(timedelta(seconds=45)) == []


def test_heartbeat_refreshes_timestamp() -> None:
    clock = FakeClock()
    tracker = PresenceTracker(clock)
    tracker.heartbeat("agent-1")
    clock.advance(30)
    tracker.heartbeat("agent-1")

    presence = tracker.get("agent-1")
    assert presence is not None
    assert presence.last_heartbeat_at == clock.now
