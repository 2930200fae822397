import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from .errors import (
    ActivityNotFoundError,
    DuplicateActivityError,
    DuplicateParticipantError,
    EventNotFoundError,
    ParticipantNotFoundError,
    ValidationError,
)
from .models import LogType, ParticipantType
from .normalizers import (
    generate_deterministic_qr_code,
    normalize_participant_type,
    normalize_qr_payload,
    normalize_required_text,
    parse_assigned_leaders,
)
from .resolver import group_by_participant, latest_entry
from ..storage.models import Activity, Event, Participant
from ..storage.repository import (
    ActivityLogRepository,
    ActivityRepository,
    EventRepository,
    ParticipantRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    """
    What a cascading delete removed or changed.
    """
    deleted_logs: int = 0
    deleted_participants: int = 0
    deleted_activities: int = 0
    relocated_participants: int = 0


class RosterManager:
    """
    Administrative operations on events, activities and participants.

    Every cascading delete runs in a single transaction: either all rows
    go or none do.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        on_roster_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._on_roster_change = on_roster_change

    def _commit(self, db_session: Session, action: str, **context) -> None:
        try:
            db_session.commit()
        except SQLAlchemyError as e:
            details = ", ".join(f"{k}={v}" for k, v in context.items())
            logger.error(
                f"Database error on {action}: {details}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            db_session.rollback()
            raise

    def _notify(self, event_id: str) -> None:
        if self._on_roster_change is not None:
            self._on_roster_change(event_id)

    def _require_event(self, db_session: Session, event_id: str) -> Event:
        event = EventRepository(db_session).get(event_id)
        if event is None:
            raise EventNotFoundError(f"Event not found: {event_id}")
        return event

    # Events

    def create_event(
        self,
        name: str,
        description: str = "",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        created_by: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Event:
        clean_name = normalize_required_text(name)
        if not clean_name:
            raise ValidationError("Event name is required.")
        if start_date and end_date and end_date < start_date:
            raise ValidationError("Event end date is before its start date.")

        db_session = self._db_session_factory()
        try:
            if event_id and EventRepository(db_session).get(event_id) is not None:
                raise ValidationError(f"Event id already in use: {event_id}")
            event = EventRepository(db_session).create(
                name=clean_name,
                description=description or "",
                start_date=start_date,
                end_date=end_date,
                created_by=created_by,
                event_id=event_id,
            )
            self._commit(db_session, "create_event", name=clean_name)
            logger.info(f"Event created: event_id={event.id}, name={event.name}")
            return event
        finally:
            db_session.close()

    def list_events(self) -> List[Event]:
        db_session = self._db_session_factory()
        try:
            return EventRepository(db_session).list_all()
        finally:
            db_session.close()

    def get_event(self, event_id: str) -> Event:
        db_session = self._db_session_factory()
        try:
            return self._require_event(db_session, event_id)
        finally:
            db_session.close()

    def get_active_event(self) -> Optional[Event]:
        db_session = self._db_session_factory()
        try:
            return EventRepository(db_session).get_active()
        finally:
            db_session.close()

    def set_active_event(self, event_id: str) -> Event:
        """
        Activates event_id and deactivates every other event atomically.
        """
        db_session = self._db_session_factory()
        try:
            repo = EventRepository(db_session)
            event = self._require_event(db_session, event_id)
            repo.set_active(event_id)
            self._commit(db_session, "set_active_event", event_id=event_id)
            db_session.refresh(event)
            logger.info(f"Active event set: event_id={event_id}")
            return event
        finally:
            db_session.close()

    def delete_event(self, event_id: str) -> CascadeResult:
        """
        Deletes the event with its logs, participants and activities.
        """
        db_session = self._db_session_factory()
        try:
            event = self._require_event(db_session, event_id)
            participants_repo = ParticipantRepository(db_session)
            participant_ids = participants_repo.ids_for_event(event_id)

            result = CascadeResult()
            result.deleted_logs = ActivityLogRepository(db_session).delete_all_for_event(
                event_id, participant_ids=participant_ids
            )
            result.deleted_participants = participants_repo.delete_all_for_event(event_id)
            result.deleted_activities = ActivityRepository(db_session).delete_all_for_event(event_id)
            EventRepository(db_session).delete(event)
            self._commit(db_session, "delete_event", event_id=event_id)
        finally:
            db_session.close()

        logger.info(
            f"Event deleted: event_id={event_id}, logs={result.deleted_logs}, "
            f"participants={result.deleted_participants}, activities={result.deleted_activities}"
        )
        self._notify(event_id)
        return result

    # Activities

    def create_activity(self, event_id: str, name: str, description: str = "", location: str = "") -> Activity:
        clean_name = normalize_required_text(name)
        if not clean_name:
            raise ValidationError("Activity name is required.")

        db_session = self._db_session_factory()
        try:
            self._require_event(db_session, event_id)
            repo = ActivityRepository(db_session)
            if repo.find_by_name(event_id, clean_name) is not None:
                raise DuplicateActivityError(f'Activity "{clean_name}" already exists for this event.')
            activity = repo.create(
                event_id=event_id,
                name=clean_name,
                description=description or "",
                location=location or "",
            )
            self._commit(db_session, "create_activity", event_id=event_id, name=clean_name)
            logger.info(f"Activity created: event_id={event_id}, activity_id={activity.id}, name={clean_name}")
            return activity
        except IntegrityError:
            # Lost a race with another create of the same name
            raise DuplicateActivityError(f'Activity "{clean_name}" already exists for this event.')
        finally:
            db_session.close()

    def list_activities(self, event_id: str) -> List[Activity]:
        db_session = self._db_session_factory()
        try:
            return ActivityRepository(db_session).list_by_event(event_id)
        finally:
            db_session.close()

    def get_activity(self, event_id: str, activity_id: str) -> Activity:
        db_session = self._db_session_factory()
        try:
            activity = ActivityRepository(db_session).get(event_id, activity_id)
            if activity is None:
                raise ActivityNotFoundError(f"Activity not found: {activity_id}")
            return activity
        finally:
            db_session.close()

    def update_activity(
        self,
        event_id: str,
        activity_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Activity:
        db_session = self._db_session_factory()
        try:
            repo = ActivityRepository(db_session)
            activity = repo.get(event_id, activity_id)
            if activity is None:
                raise ActivityNotFoundError(f"Activity not found: {activity_id}")

            if name is not None:
                clean_name = normalize_required_text(name)
                if not clean_name:
                    raise ValidationError("Activity name is required.")
                existing = repo.find_by_name(event_id, clean_name)
                if existing is not None and existing.id != activity_id:
                    raise DuplicateActivityError(f'Activity "{clean_name}" already exists for this event.')
                activity.name = clean_name
            if description is not None:
                activity.description = description
            if location is not None:
                activity.location = location

            self._commit(db_session, "update_activity", activity_id=activity_id)
            logger.info(f"Activity updated: event_id={event_id}, activity_id={activity_id}")
        finally:
            db_session.close()

        self._notify(event_id)
        return activity

    def delete_activity(self, event_id: str, activity_id: str) -> CascadeResult:
        """
        Deletes an activity in one transaction.

        - participants cached at the activity go back to camp
        - departure/change entries targeting it are deleted, except a
          participant's latest entry, which stays as a dangling reference
          (resolved as camp) so the rest of their history still replays
          to the right place
        - return entries stay (they only mean "back at camp")
        """
        db_session = self._db_session_factory()
        try:
            activities_repo = ActivityRepository(db_session)
            logs_repo = ActivityLogRepository(db_session)
            activity = activities_repo.get(event_id, activity_id)
            if activity is None:
                raise ActivityNotFoundError(f"Activity not found: {activity_id}")

            preserve_ids = set()
            history = group_by_participant(logs_repo.list_by_activity(activity_id))
            for participant_id in history:
                latest = latest_entry(logs_repo.list_by_participant(participant_id))
                if (
                    latest is not None
                    and latest.activity_id == activity_id
                    and latest.type != LogType.RETURN
                ):
                    preserve_ids.add(latest.id)

            result = CascadeResult()
            result.relocated_participants = ParticipantRepository(db_session).move_to_camp_from(
                event_id, activity_id
            )
            result.deleted_logs = logs_repo.delete_all_for_activity(activity_id, preserve_ids=preserve_ids)
            activities_repo.delete(activity)
            result.deleted_activities = 1
            self._commit(db_session, "delete_activity", activity_id=activity_id)
        finally:
            db_session.close()

        logger.info(
            f"Activity deleted: event_id={event_id}, activity_id={activity_id}, "
            f"logs={result.deleted_logs}, moved_to_camp={result.relocated_participants}"
        )
        self._notify(event_id)
        return result

    # Participants

    def create_participant(
        self,
        event_id: str,
        name: str,
        church: str,
        participant_type: Union[str, ParticipantType],
        assigned_leaders: Union[str, Iterable[str], None] = None,
    ) -> Participant:
        """
        Creates a participant at camp with a deterministic badge code.

        Raises:
            ValidationError: missing name/church or invalid type
            DuplicateParticipantError: same name and church already in the event
        """
        clean_name = normalize_required_text(name)
        clean_church = normalize_required_text(church)
        kind = normalize_participant_type(
            participant_type.value if isinstance(participant_type, ParticipantType) else participant_type
        )
        if not clean_name or not clean_church:
            raise ValidationError("Participant name and church are required.")
        if kind is None:
            raise ValidationError(
                f"Invalid participant type: {participant_type}. Must be 'student' or 'leader'."
            )
        leaders = parse_assigned_leaders(assigned_leaders)

        db_session = self._db_session_factory()
        try:
            self._require_event(db_session, event_id)
            repo = ParticipantRepository(db_session)
            qr_code = generate_deterministic_qr_code(event_id, clean_name, clean_church)
            if (
                repo.find_by_name_and_church(event_id, clean_name, clean_church) is not None
                or repo.get_by_qr_code(event_id, qr_code) is not None
            ):
                logger.warning(
                    f"Duplicate participant rejected: event_id={event_id}, "
                    f"name={clean_name}, church={clean_church}"
                )
                raise DuplicateParticipantError(f"Duplicate: {clean_name} from {clean_church}")

            participant = repo.create(
                event_id=event_id,
                name=clean_name,
                church=clean_church,
                participant_type=kind.value,
                assigned_leaders=leaders,
                qr_code=qr_code,
            )
            self._commit(db_session, "create_participant", event_id=event_id, name=clean_name)
            logger.info(
                f"Participant created: event_id={event_id}, participant_id={participant.id}, "
                f"type={kind.value}"
            )
        except IntegrityError:
            raise DuplicateParticipantError(f"Duplicate: {clean_name} from {clean_church}")
        finally:
            db_session.close()

        self._notify(event_id)
        return participant

    def list_participants(
        self,
        event_id: str,
        church: Optional[str] = None,
        location: Optional[str] = None,
    ) -> List[Participant]:
        db_session = self._db_session_factory()
        try:
            return ParticipantRepository(db_session).list_by_event(event_id, church=church, location=location)
        finally:
            db_session.close()

    def get_participant(self, event_id: str, participant_id: str) -> Participant:
        db_session = self._db_session_factory()
        try:
            participant = ParticipantRepository(db_session).get(event_id, participant_id)
            if participant is None:
                raise ParticipantNotFoundError(f"Participant not found: {participant_id}")
            return participant
        finally:
            db_session.close()

    def get_participant_by_qr_code(self, event_id: str, qr_payload: str) -> Participant:
        qr_code = normalize_qr_payload(qr_payload)
        if qr_code is None:
            raise ParticipantNotFoundError("Invalid QR code: participant not found.")
        db_session = self._db_session_factory()
        try:
            participant = ParticipantRepository(db_session).get_by_qr_code(event_id, qr_code)
            if participant is None:
                raise ParticipantNotFoundError("Invalid QR code: participant not found.")
            return participant
        finally:
            db_session.close()

    def update_participant(
        self,
        event_id: str,
        participant_id: str,
        participant_type: Union[str, ParticipantType, None] = None,
        assigned_leaders: Union[str, Iterable[str], None] = None,
    ) -> Participant:
        """
        Only type and assigned leaders change after creation; name and
        church feed the badge code.
        """
        db_session = self._db_session_factory()
        try:
            participant = ParticipantRepository(db_session).get(event_id, participant_id)
            if participant is None:
                raise ParticipantNotFoundError(f"Participant not found: {participant_id}")

            if participant_type is not None:
                raw = participant_type.value if isinstance(participant_type, ParticipantType) else participant_type
                kind = normalize_participant_type(raw)
                if kind is None:
                    raise ValidationError(
                        f"Invalid participant type: {participant_type}. Must be 'student' or 'leader'."
                    )
                participant.type = kind.value
            if assigned_leaders is not None:
                participant.assigned_leaders = ",".join(parse_assigned_leaders(assigned_leaders))

            self._commit(db_session, "update_participant", participant_id=participant_id)
            logger.info(f"Participant updated: event_id={event_id}, participant_id={participant_id}")
        finally:
            db_session.close()

        self._notify(event_id)
        return participant

    def delete_participant(self, event_id: str, participant_id: str) -> CascadeResult:
        """
        Deletes a participant and all of their log entries, nothing else.
        """
        db_session = self._db_session_factory()
        try:
            repo = ParticipantRepository(db_session)
            participant = repo.get(event_id, participant_id)
            if participant is None:
                raise ParticipantNotFoundError(f"Participant not found: {participant_id}")

            result = CascadeResult()
            result.deleted_logs = ActivityLogRepository(db_session).delete_all_for_participant(participant_id)
            repo.delete(participant)
            result.deleted_participants = 1
            self._commit(db_session, "delete_participant", participant_id=participant_id)
        finally:
            db_session.close()

        logger.info(
            f"Participant deleted: event_id={event_id}, participant_id={participant_id}, "
            f"logs={result.deleted_logs}"
        )
        self._notify(event_id)
        return result

    def reset_test_data(self, event_id: str) -> CascadeResult:
        """
        Wipes the event's scan history and puts everybody back at camp.
        Participants and activities are kept.
        """
        db_session = self._db_session_factory()
        try:
            self._require_event(db_session, event_id)
            participants_repo = ParticipantRepository(db_session)
            participant_ids = participants_repo.ids_for_event(event_id)

            result = CascadeResult()
            result.deleted_logs = ActivityLogRepository(db_session).delete_all_for_event(
                event_id, participant_ids=participant_ids
            )
            result.relocated_participants = participants_repo.reset_locations_for_event(event_id)
            self._commit(db_session, "reset_test_data", event_id=event_id)
        finally:
            db_session.close()

        logger.warning(
            f"Test data reset: event_id={event_id}, logs_deleted={result.deleted_logs}, "
            f"participants={result.relocated_participants}"
        )
        self._notify(event_id)
        return result
