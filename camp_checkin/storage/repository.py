import logging
from datetime import datetime
from typing import Collection, Iterable, List, Optional
from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from .models import Activity, ActivityLog, Event, Participant, CAMP_LOCATION
from ..core.models import LogEntry, LogType, Transition

logger = logging.getLogger(__name__)


class _Repository:
    """
    Repositories work inside the caller's transaction: they flush but
    never commit. The caller commits or rolls back the whole unit.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def _flush(self, action: str, **context) -> None:
        try:
            self._db.flush()
        except SQLAlchemyError as e:
            details = ", ".join(f"{k}={v}" for k, v in context.items())
            logger.error(
                f"Database error on {action}: {details}, "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )
            self._db.rollback()
            raise


class EventRepository(_Repository):
    """
    Persistence of events and the exclusive "active" flag.
    """

    def create(
        self,
        name: str,
        description: str = "",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        created_by: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Event:
        event = Event(
            name=name,
            description=description,
            start_date=start_date,
            end_date=end_date,
            created_by=created_by,
            active=False,
        )
        if event_id:
            event.id = event_id
        self._db.add(event)
        self._flush("create_event", name=name)
        return event

    def get(self, event_id: str) -> Optional[Event]:
        return self._db.get(Event, event_id)

    def list_all(self) -> List[Event]:
        return self._db.query(Event).order_by(Event.created_at, Event.id).all()

    def get_active(self) -> Optional[Event]:
        """
        The active event. Should two ever be flagged, the latest start wins.
        """
        return (
            self._db.query(Event)
            .filter(Event.active.is_(True))
            .order_by(Event.start_date.desc(), Event.created_at.desc())
            .first()
        )

    def set_active(self, event_id: str) -> None:
        """
        Flags event_id active and every other event inactive with one
        UPDATE statement.
        """
        self._db.execute(
            update(Event).values(active=case((Event.id == event_id, True), else_=False))
        )
        self._flush("set_active_event", event_id=event_id)

    def delete(self, event: Event) -> None:
        self._db.delete(event)
        self._flush("delete_event", event_id=event.id)


class ActivityRepository(_Repository):

    def create(self, event_id: str, name: str, description: str = "", location: str = "") -> Activity:
        activity = Activity(
            event_id=event_id,
            name=name,
            description=description,
            location=location,
        )
        self._db.add(activity)
        self._flush("create_activity", event_id=event_id, name=name)
        return activity

    def get(self, event_id: str, activity_id: str) -> Optional[Activity]:
        return (
            self._db.query(Activity)
            .filter(Activity.event_id == event_id, Activity.id == activity_id)
            .first()
        )

    def find_by_name(self, event_id: str, name: str) -> Optional[Activity]:
        return (
            self._db.query(Activity)
            .filter(Activity.event_id == event_id, Activity.name == name)
            .first()
        )

    def list_by_event(self, event_id: str) -> List[Activity]:
        return (
            self._db.query(Activity)
            .filter(Activity.event_id == event_id)
            .order_by(Activity.name)
            .all()
        )

    def ids_for_event(self, event_id: str) -> List[str]:
        rows = self._db.query(Activity.id).filter(Activity.event_id == event_id).all()
        return [row[0] for row in rows]

    def delete(self, activity: Activity) -> None:
        self._db.delete(activity)
        self._flush("delete_activity", activity_id=activity.id)

    def delete_all_for_event(self, event_id: str) -> int:
        count = (
            self._db.query(Activity)
            .filter(Activity.event_id == event_id)
            .delete(synchronize_session=False)
        )
        self._flush("delete_activities_for_event", event_id=event_id)
        return count


class ParticipantRepository(_Repository):
    """
    Persistence of participants, including the cached current location.
    """

    def create(
        self,
        event_id: str,
        name: str,
        church: str,
        participant_type: str,
        assigned_leaders: Iterable[str],
        qr_code: str,
    ) -> Participant:
        logger.debug(
            f"Creating participant: event_id={event_id}, name={name}, "
            f"church={church}, type={participant_type}"
        )
        participant = Participant(
            event_id=event_id,
            name=name,
            church=church,
            type=participant_type,
            assigned_leaders=",".join(assigned_leaders),
            qr_code=qr_code,
            current_location=CAMP_LOCATION,
            location_version=0,
        )
        self._db.add(participant)
        self._flush("create_participant", event_id=event_id, name=name)
        return participant

    def get(self, event_id: str, participant_id: str) -> Optional[Participant]:
        return (
            self._db.query(Participant)
            .filter(Participant.event_id == event_id, Participant.id == participant_id)
            .first()
        )

    def get_by_qr_code(self, event_id: str, qr_code: str) -> Optional[Participant]:
        return (
            self._db.query(Participant)
            .filter(Participant.event_id == event_id, Participant.qr_code == qr_code)
            .first()
        )

    def find_by_name_and_church(self, event_id: str, name: str, church: str) -> Optional[Participant]:
        return (
            self._db.query(Participant)
            .filter(
                Participant.event_id == event_id,
                Participant.name == name,
                Participant.church == church,
            )
            .first()
        )

    def list_by_event(
        self,
        event_id: str,
        church: Optional[str] = None,
        location: Optional[str] = None,
    ) -> List[Participant]:
        query = self._db.query(Participant).filter(Participant.event_id == event_id)
        if church is not None:
            query = query.filter(Participant.church == church)
        if location is not None:
            query = query.filter(Participant.current_location == location)
        return query.order_by(Participant.name, Participant.id).all()

    def ids_for_event(self, event_id: str) -> List[str]:
        rows = self._db.query(Participant.id).filter(Participant.event_id == event_id).all()
        return [row[0] for row in rows]

    def set_location_if_version(self, participant_id: str, location: str, expected_version: int) -> bool:
        """
        Conditional write of the cached location.

        Only succeeds if nobody else wrote the location since the caller
        read expected_version. Returns False when the row was changed.
        """
        result = self._db.execute(
            update(Participant)
            .where(
                Participant.id == participant_id,
                Participant.location_version == expected_version,
            )
            .values(
                current_location=location,
                location_version=Participant.location_version + 1,
            )
        )
        self._flush("set_location_if_version", participant_id=participant_id, location=location)
        return result.rowcount == 1

    def set_location(self, participant_id: str, location: str) -> None:
        self._db.execute(
            update(Participant)
            .where(Participant.id == participant_id)
            .values(
                current_location=location,
                location_version=Participant.location_version + 1,
            )
        )
        self._flush("set_location", participant_id=participant_id, location=location)

    def move_to_camp_from(self, event_id: str, activity_id: str) -> int:
        """
        Reverts to camp every participant whose cached location is activity_id.
        """
        result = self._db.execute(
            update(Participant)
            .where(
                Participant.event_id == event_id,
                Participant.current_location == activity_id,
            )
            .values(
                current_location=CAMP_LOCATION,
                location_version=Participant.location_version + 1,
            )
        )
        self._flush("move_to_camp_from", event_id=event_id, activity_id=activity_id)
        return result.rowcount

    def reset_locations_for_event(self, event_id: str) -> int:
        result = self._db.execute(
            update(Participant)
            .where(Participant.event_id == event_id)
            .values(
                current_location=CAMP_LOCATION,
                location_version=Participant.location_version + 1,
            )
        )
        self._flush("reset_locations_for_event", event_id=event_id)
        return result.rowcount

    def delete(self, participant: Participant) -> None:
        self._db.delete(participant)
        self._flush("delete_participant", participant_id=participant.id)

    def delete_all_for_event(self, event_id: str) -> int:
        count = (
            self._db.query(Participant)
            .filter(Participant.event_id == event_id)
            .delete(synchronize_session=False)
        )
        self._flush("delete_participants_for_event", event_id=event_id)
        return count


class ActivityLogRepository(_Repository):
    """
    Append-only store of location transitions.

    Entries are never updated. They only disappear through the bulk
    deletes used by cascading entity deletion and test-data reset.
    Listings are unordered; callers sort by LogEntry.sort_key.
    """

    def append(
        self,
        event_id: str,
        participant_id: str,
        transition: Transition,
        leader_id: str,
    ) -> LogEntry:
        """
        Stores a transition with a server-assigned timestamp.

        No deduplication happens here: the same scan twice gives two rows.
        """
        row = ActivityLog(
            event_id=event_id,
            participant_id=participant_id,
            type=transition.log_type.value,
            activity_id=transition.activity_id,
            from_activity_id=getattr(transition, "from_activity_id", None),
            leader_id=leader_id,
            timestamp=datetime.utcnow(),
        )
        self._db.add(row)
        self._flush(
            "append_activity_log",
            participant_id=participant_id,
            type=row.type,
            activity_id=row.activity_id,
        )
        logger.debug(
            f"Activity log appended: id={row.id}, participant_id={participant_id}, "
            f"type={row.type}, activity_id={row.activity_id}, "
            f"from_activity_id={row.from_activity_id}, leader_id={leader_id}"
        )
        return LogEntry.from_row(row)

    def list_by_participant(self, participant_id: str) -> List[LogEntry]:
        rows = self._db.query(ActivityLog).filter(ActivityLog.participant_id == participant_id).all()
        return [LogEntry.from_row(row) for row in rows]

    def list_by_participants(self, participant_ids: Collection[str]) -> List[LogEntry]:
        if not participant_ids:
            return []
        rows = (
            self._db.query(ActivityLog)
            .filter(ActivityLog.participant_id.in_(list(participant_ids)))
            .all()
        )
        return [LogEntry.from_row(row) for row in rows]

    def list_by_activity(self, activity_id: str) -> List[LogEntry]:
        rows = self._db.query(ActivityLog).filter(ActivityLog.activity_id == activity_id).all()
        return [LogEntry.from_row(row) for row in rows]

    def list_by_event(self, event_id: str) -> List[LogEntry]:
        rows = self._db.query(ActivityLog).filter(ActivityLog.event_id == event_id).all()
        return [LogEntry.from_row(row) for row in rows]

    def delete_all_for_participant(self, participant_id: str) -> int:
        count = (
            self._db.query(ActivityLog)
            .filter(ActivityLog.participant_id == participant_id)
            .delete(synchronize_session=False)
        )
        self._flush("delete_logs_for_participant", participant_id=participant_id)
        return count

    def delete_all_for_activity(self, activity_id: str, preserve_ids: Collection[int] = ()) -> int:
        """
        Deletes the departure/change entries that target activity_id.

        Return entries stay: they only mean "back at camp" and removing
        them would rewrite where a participant ended up. preserve_ids keeps
        entries that must survive as dangling references (a participant's
        latest entry), which resolvers read as camp.
        """
        query = self._db.query(ActivityLog).filter(
            ActivityLog.activity_id == activity_id,
            ActivityLog.type.in_([LogType.DEPARTURE.value, LogType.CHANGE.value]),
        )
        if preserve_ids:
            query = query.filter(ActivityLog.id.notin_(list(preserve_ids)))
        count = query.delete(synchronize_session=False)
        self._flush("delete_logs_for_activity", activity_id=activity_id)
        return count

    def delete_all_for_event(self, event_id: str, participant_ids: Collection[str] = ()) -> int:
        """
        Deletes the event's entries, plus any entry of the given participants
        (catches rows written with a wrong event id).
        """
        condition = ActivityLog.event_id == event_id
        if participant_ids:
            condition = or_(condition, ActivityLog.participant_id.in_(list(participant_ids)))
        count = self._db.query(ActivityLog).filter(condition).delete(synchronize_session=False)
        self._flush("delete_logs_for_event", event_id=event_id)
        return count
