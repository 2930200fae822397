import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Optional
from sqlalchemy.orm import Session, sessionmaker
from .models import Location, LocationSource, LogEntry, LogType
from ..storage.models import Activity
from ..storage.repository import ActivityLogRepository, ActivityRepository, ParticipantRepository

logger = logging.getLogger(__name__)

_ENGAGEMENT_TYPES = (LogType.DEPARTURE, LogType.CHANGE)


def latest_entry(entries: Iterable[LogEntry]) -> Optional[LogEntry]:
    """
    Most recent entry by (timestamp, id), or None for an empty history.
    """
    latest: Optional[LogEntry] = None
    for entry in entries:
        if latest is None or entry.sort_key > latest.sort_key:
            latest = entry
    return latest


def resolve_location(
    entries: Iterable[LogEntry],
    known_activity_ids: Optional[Collection[str]] = None,
) -> Location:
    """
    Derives where a participant is from their full history.

    - empty history -> camp
    - latest entry is a return -> camp
    - latest entry is a departure/change -> its destination activity,
      unless known_activity_ids is given and does not contain it
      (deleted activity), in which case camp
    """
    latest = latest_entry(entries)
    if latest is None or latest.type == LogType.RETURN:
        return Location.camp()
    if known_activity_ids is not None and latest.activity_id not in known_activity_ids:
        return Location.camp()
    return Location.at(latest.activity_id)


def last_engaged_activity(entries: Iterable[LogEntry]) -> Optional[str]:
    """
    Target of the most recent departure/change, ignoring returns.
    """
    engaged = latest_entry(entry for entry in entries if entry.type in _ENGAGEMENT_TYPES)
    return engaged.activity_id if engaged else None


def group_by_participant(entries: Iterable[LogEntry]) -> Dict[str, List[LogEntry]]:
    grouped: Dict[str, List[LogEntry]] = defaultdict(list)
    for entry in entries:
        grouped[entry.participant_id].append(entry)
    return grouped


@dataclass
class LocationPartition:
    """
    Participants of an event grouped by where they currently are.
    Every known activity has a (possibly empty) list.
    """
    camp: List[str] = field(default_factory=list)
    by_activity: Dict[str, List[str]] = field(default_factory=dict)
    source: LocationSource = LocationSource.LOG

    def place(self, participant_id: str, location: Location) -> None:
        if location.is_camp:
            self.camp.append(participant_id)
        else:
            self.by_activity.setdefault(location.activity_id, []).append(participant_id)


@dataclass
class HistoryItem:
    """
    A log entry with the activity names resolved for display.
    Names are None when the activity no longer exists.
    """
    entry: LogEntry
    activity_name: Optional[str]
    from_activity_name: Optional[str]


class LocationResolver:
    """
    Reads the activity log and derives current locations.

    Never writes. The log is the source of truth; the cached
    participants.current_location column is only read on the fast path
    of partition_by_location.
    """

    def __init__(self, db_session_factory: sessionmaker) -> None:
        self._db_session_factory = db_session_factory

    def current_location(self, participant_id: str, db_session: Optional[Session] = None) -> Location:
        """
        Current location of one participant, tolerating dangling activity ids.

        Pass db_session to read inside an ongoing transaction.
        """
        if db_session is not None:
            return self._current_location(db_session, participant_id)

        db_session = self._db_session_factory()
        try:
            return self._current_location(db_session, participant_id)
        finally:
            db_session.close()

    def _current_location(self, db_session: Session, participant_id: str) -> Location:
        entries = ActivityLogRepository(db_session).list_by_participant(participant_id)
        location = resolve_location(entries)
        if location.is_camp:
            return location

        # The destination may have been deleted since the entry was written
        if db_session.get(Activity, location.activity_id) is None:
            logger.debug(
                f"Dangling activity reference treated as camp: "
                f"participant_id={participant_id}, activity_id={location.activity_id}"
            )
            return Location.camp()
        return location

    def partition_by_location(
        self,
        event_id: str,
        source: LocationSource = LocationSource.LOG,
    ) -> LocationPartition:
        """
        Groups every participant of the event by current location.

        source=CACHE reads the cached column (fast path); source=LOG replays
        the event's logs, fetched with a single query (authoritative path).
        Unknown activity ids count as camp in both.
        """
        db_session = self._db_session_factory()
        try:
            activity_ids = set(ActivityRepository(db_session).ids_for_event(event_id))
            participants = ParticipantRepository(db_session).list_by_event(event_id)

            partition = LocationPartition(
                by_activity={activity_id: [] for activity_id in activity_ids},
                source=source,
            )

            if source == LocationSource.CACHE:
                for participant in participants:
                    location = Location.from_cache_value(participant.current_location)
                    if not location.is_camp and location.activity_id not in activity_ids:
                        location = Location.camp()
                    partition.place(participant.id, location)
            else:
                history = group_by_participant(
                    ActivityLogRepository(db_session).list_by_participants(
                        [participant.id for participant in participants]
                    )
                )
                for participant in participants:
                    location = resolve_location(history.get(participant.id, []), activity_ids)
                    partition.place(participant.id, location)

            logger.debug(
                f"Partition computed: event_id={event_id}, source={source.value}, "
                f"participants={len(participants)}, at_camp={len(partition.camp)}"
            )
            return partition
        finally:
            db_session.close()

    def engagement_counts(self, event_id: str) -> Dict[str, int]:
        """
        Per activity, how many participants had it as the target of their
        most recent departure/change. Returning to camp does not remove
        the participant from the count; each participant counts at most once.
        """
        db_session = self._db_session_factory()
        try:
            activity_ids = ActivityRepository(db_session).ids_for_event(event_id)
            participant_ids = ParticipantRepository(db_session).ids_for_event(event_id)
            history = group_by_participant(
                ActivityLogRepository(db_session).list_by_participants(participant_ids)
            )
        finally:
            db_session.close()

        counts: Dict[str, int] = {activity_id: 0 for activity_id in activity_ids}
        for participant_id in participant_ids:
            activity_id = last_engaged_activity(history.get(participant_id, []))
            if activity_id in counts:
                counts[activity_id] += 1
        return counts

    def participant_history(self, participant_id: str) -> List[HistoryItem]:
        """
        Newest-first history of a participant with activity names.
        """
        db_session = self._db_session_factory()
        try:
            entries = ActivityLogRepository(db_session).list_by_participant(participant_id)
            entries.sort(key=lambda entry: entry.sort_key, reverse=True)

            names: Dict[str, Optional[str]] = {}

            def name_of(activity_id: Optional[str]) -> Optional[str]:
                if not activity_id:
                    return None
                if activity_id not in names:
                    activity = db_session.get(Activity, activity_id)
                    names[activity_id] = activity.name if activity else None
                return names[activity_id]

            return [
                HistoryItem(
                    entry=entry,
                    activity_name=name_of(entry.activity_id),
                    from_activity_name=name_of(entry.from_activity_id),
                )
                for entry in entries
            ]
        finally:
            db_session.close()
