import asyncio
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import structlog

from app.domain.entities import Conversation, utc_now
from app.domain.enums import ConversationStatus, TransitionAction
from app.domain.exceptions import ClosedConversationError, SlotConflict
from app.domain.state_machine import ConversationLifecycle

logger = structlog.get_logger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """A daily opening window, start inclusive, end exclusive."""

    start: time
    end: time

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(f"Window start {self.start} must precede end {self.end}")

    @classmethod
    def parse(cls, raw: str) -> "TimeWindow":
        start, _, end = raw.strip().partition("-")
        return cls(time.fromisoformat(start.strip()), time.fromisoformat(end.strip()))


def _parse_days(raw: str) -> list[int]:
    days: list[int] = []
    for part in raw.lower().split(","):
        part = part.strip()
        if "-" in part:
            first, _, last = part.partition("-")
            start, stop = WEEKDAYS.index(first.strip()), WEEKDAYS.index(last.strip())
            if start > stop:
                raise ValueError(f"Day range '{part}' runs backwards")
            days.extend(range(start, stop + 1))
        elif part:
            days.append(WEEKDAYS.index(part))
    return days


def normalize_slot_time(value: datetime) -> datetime:
    """Bring a requested slot to UTC at minute granularity."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(second=0, microsecond=0)


@dataclass(frozen=True, slots=True)
class AvailabilityGrid:
    windows: Mapping[int, tuple[TimeWindow, ...]] = field(default_factory=dict)
    slot_minutes: int = 30
    timezone: str = "UTC"
    min_notice: timedelta = timedelta(0)

    @classmethod
    def parse(
        cls,
        raw: str,
        slot_minutes: int = 30,
        timezone: str = "UTC",
        min_notice: timedelta = timedelta(0),
    ) -> "AvailabilityGrid":
        """Parse ``"mon-fri 09:00-12:00,13:00-17:00; sat 10:00-14:00"``."""
        if slot_minutes < 1:
            raise ValueError("Slot length must be at least one minute")
        windows: dict[int, list[TimeWindow]] = {}
        for entry in raw.split(";"):
            entry = entry.strip()
            if not entry:
                continue
            days_raw, _, windows_raw = entry.partition(" ")
            parsed = [TimeWindow.parse(item) for item in windows_raw.split(",") if item.strip()]
            if not parsed:
                raise ValueError(f"Availability entry '{entry}' has no time windows")
            for day in _parse_days(days_raw):
                windows.setdefault(day, []).extend(parsed)
        return cls(
            windows={day: tuple(sorted(items, key=lambda w: w.start)) for day, items in windows.items()},
            slot_minutes=slot_minutes,
            timezone=timezone,
            min_notice=min_notice,
        )

    @property
    def slot_length(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)

    def slot_starts(self, day: date) -> Iterator[datetime]:
        tz = ZoneInfo(self.timezone)
        for window in self.windows.get(day.weekday(), ()):
            cursor = datetime.combine(day, window.start, tzinfo=tz)
            window_end = datetime.combine(day, window.end, tzinfo=tz)
            while cursor + self.slot_length <= window_end:
                yield cursor.astimezone(UTC)
                cursor += self.slot_length

    def contains(self, slot_time: datetime) -> bool:
        local = slot_time.astimezone(ZoneInfo(self.timezone))
        return slot_time in set(self.slot_starts(local.date()))


class SlotScheduler:
    """Allocates appointment slots from the grid without double-booking.

    Conflicts are exact-match on the slot start instant. The reservation set
    is the contended resource: check and insert happen as one unit under
    ``_lock``.
    """

    def __init__(self, grid: AvailabilityGrid, clock: Callable[[], datetime] = utc_now) -> None:
        self.grid = grid
        self._clock = clock
        self._reserved: dict[datetime, int] = {}
        self._by_conversation: dict[int, datetime] = {}
        self._lock = asyncio.Lock()

    def list_available(self, start: datetime, end: datetime) -> Iterator[datetime]:
        """Yield free slot starts in ``[start, end)``, lazily, against the live set."""
        start = normalize_slot_time(start)
        end = normalize_slot_time(end)
        earliest = max(start, self._clock() + self.grid.min_notice)
        tz = ZoneInfo(self.grid.timezone)
        day = start.astimezone(tz).date()
        last_day = end.astimezone(tz).date()
        while day <= last_day:
            for slot_time in self.grid.slot_starts(day):
                if slot_time < earliest or slot_time >= end:
                    continue
                if slot_time in self._reserved:
                    continue
                yield slot_time
            day += timedelta(days=1)

    def is_reserved(self, slot_time: datetime) -> bool:
        return normalize_slot_time(slot_time) in self._reserved

    def reservation_for(self, conversation_id: int) -> datetime | None:
        return self._by_conversation.get(conversation_id)

    async def reserve(self, conversation: Conversation, slot_time: datetime) -> datetime:
        slot_time = normalize_slot_time(slot_time)
        if ConversationLifecycle.is_read_only(conversation.status):
            raise ClosedConversationError(conversation.id)
        next_status = ConversationLifecycle.transition(
            conversation.status, TransitionAction.SCHEDULE
        )

        async with self._lock:
            if not self.grid.contains(slot_time):
                raise SlotConflict(slot_time, "outside the availability grid")
            if slot_time < self._clock() + self.grid.min_notice:
                raise SlotConflict(slot_time, "too soon or in the past")
            holder = self._reserved.get(slot_time)
            if holder is not None:
                raise SlotConflict(slot_time)
            self._reserved[slot_time] = conversation.id
            self._by_conversation[conversation.id] = slot_time
            conversation.status = next_status
            conversation.slot_time = slot_time

        logger.info("slot_reserved", conversation_id=conversation.id, slot_time=slot_time.isoformat())
        return slot_time

    async def release(self, conversation: Conversation) -> None:
        if ConversationLifecycle.is_read_only(conversation.status):
            raise ClosedConversationError(conversation.id)
        next_status = ConversationLifecycle.transition(
            conversation.status, TransitionAction.UNSCHEDULE
        )
        async with self._lock:
            self._drop(conversation.id)
            conversation.status = next_status
            conversation.slot_time = None
        logger.info("slot_released", conversation_id=conversation.id)

    async def forget(self, conversation_id: int) -> datetime | None:
        async with self._lock:
            return self._drop(conversation_id)

    def restore(self, conversations: Iterable[Conversation]) -> None:
        for conversation in conversations:
            if conversation.status != ConversationStatus.SLOT or conversation.slot_time is None:
                continue
            slot_time = normalize_slot_time(conversation.slot_time)
            self._reserved[slot_time] = conversation.id
            self._by_conversation[conversation.id] = slot_time

    def _drop(self, conversation_id: int) -> datetime | None:
        slot_time = self._by_conversation.pop(conversation_id, None)
        if slot_time is not None and self._reserved.get(slot_time) == conversation_id:
            del self._reserved[slot_time]
        return slot_time
