from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

CAMP = "camp"


class LogType(str, Enum):
    DEPARTURE = "departure"
    RETURN = "return"
    CHANGE = "change"


class ParticipantType(str, Enum):
    STUDENT = "student"
    LEADER = "leader"


class ScanType(str, Enum):
    """
    What the leader intends to record with a scan.
    """
    DEPARTURE = "departure"
    RETURN = "return"


class LocationSource(str, Enum):
    """
    Where occupancy is read from: the cached column or the log replay.
    """
    CACHE = "cache"
    LOG = "log"


@dataclass(frozen=True)
class Location:
    """
    A participant's whereabouts: camp (activity_id None) or one activity.
    """
    activity_id: Optional[str] = None

    @classmethod
    def camp(cls) -> "Location":
        return cls(activity_id=None)

    @classmethod
    def at(cls, activity_id: str) -> "Location":
        return cls(activity_id=activity_id)

    @classmethod
    def from_cache_value(cls, value: Optional[str]) -> "Location":
        if not value or value == CAMP:
            return cls.camp()
        return cls.at(value)

    @property
    def is_camp(self) -> bool:
        return self.activity_id is None

    def as_cache_value(self) -> str:
        return CAMP if self.activity_id is None else self.activity_id

    def __str__(self) -> str:
        return self.as_cache_value()


@dataclass(frozen=True)
class Departure:
    """Camp -> activity."""
    activity_id: str

    @property
    def log_type(self) -> LogType:
        return LogType.DEPARTURE

    @property
    def destination(self) -> Location:
        return Location.at(self.activity_id)


@dataclass(frozen=True)
class Return:
    """Activity -> camp. activity_id is the activity being left."""
    activity_id: str

    @property
    def log_type(self) -> LogType:
        return LogType.RETURN

    @property
    def destination(self) -> Location:
        return Location.camp()


@dataclass(frozen=True)
class Change:
    """Activity -> another activity without passing through camp."""
    from_activity_id: str
    activity_id: str

    @property
    def log_type(self) -> LogType:
        return LogType.CHANGE

    @property
    def destination(self) -> Location:
        return Location.at(self.activity_id)


Transition = Union[Departure, Return, Change]


def transition_from_row(log_type: str, activity_id: str, from_activity_id: Optional[str]) -> Transition:
    """
    Rebuilds the transition variant from stored columns.
    """
    kind = LogType(log_type)
    if kind == LogType.DEPARTURE:
        return Departure(activity_id=activity_id)
    if kind == LogType.RETURN:
        return Return(activity_id=activity_id)
    if not from_activity_id:
        raise ValueError(f"change entry without from_activity_id: activity_id={activity_id}")
    return Change(from_activity_id=from_activity_id, activity_id=activity_id)


@dataclass(frozen=True)
class LogEntry:
    """
    Read model of one activity log row.
    """
    id: int
    event_id: str
    participant_id: str
    transition: Transition
    leader_id: str
    timestamp: datetime

    @property
    def type(self) -> LogType:
        return self.transition.log_type

    @property
    def activity_id(self) -> str:
        return self.transition.activity_id

    @property
    def from_activity_id(self) -> Optional[str]:
        return getattr(self.transition, "from_activity_id", None)

    @property
    def sort_key(self):
        # id breaks ties between entries stored within the same clock tick
        return (self.timestamp, self.id)

    @classmethod
    def from_row(cls, row) -> "LogEntry":
        return cls(
            id=row.id,
            event_id=row.event_id,
            participant_id=row.participant_id,
            transition=transition_from_row(row.type, row.activity_id, row.from_activity_id),
            leader_id=row.leader_id,
            timestamp=row.timestamp,
        )
