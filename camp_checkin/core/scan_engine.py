import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from .errors import (
    ActivityNotFoundError,
    ConcurrentScanError,
    InvalidQrCodeError,
    ParticipantNotFoundError,
    ValidationError,
)
from .models import Change, Departure, Location, LogEntry, Return, ScanType, Transition
from .normalizers import normalize_qr_payload
from .resolver import LocationResolver, group_by_participant, resolve_location
from ..storage.repository import ActivityLogRepository, ActivityRepository, ParticipantRepository

logger = logging.getLogger(__name__)


class ScanRejection(str, Enum):
    """
    Expected outcomes that write nothing and need a leader's attention.
    """
    ALREADY_AT_ACTIVITY = "already_at_activity"
    ALREADY_AT_CAMP = "already_at_camp"


REJECTION_MESSAGES = {
    ScanRejection.ALREADY_AT_ACTIVITY: "Participant is already at this activity.",
    ScanRejection.ALREADY_AT_CAMP: "Participant is already at camp.",
}


def decide_transition(
    current: Location,
    scan_type: ScanType,
    target_activity_id: Optional[str] = None,
) -> Union[Transition, ScanRejection]:
    """
    The participant state machine.

    AtCamp        + Departure(t) -> Departure(t)
    AtActivity(t) + Departure(t) -> rejected, already at activity
    AtActivity(x) + Departure(t) -> Change(x, t)
    AtCamp        + Return       -> rejected, already at camp
    AtActivity(x) + Return       -> Return(x)
    """
    if scan_type == ScanType.DEPARTURE:
        if not target_activity_id:
            raise ValidationError("A departure scan needs a target activity.")
        if current.is_camp:
            return Departure(activity_id=target_activity_id)
        if current.activity_id == target_activity_id:
            return ScanRejection.ALREADY_AT_ACTIVITY
        return Change(from_activity_id=current.activity_id, activity_id=target_activity_id)

    if current.is_camp:
        return ScanRejection.ALREADY_AT_CAMP
    return Return(activity_id=current.activity_id)


@dataclass
class ScanOutcome:
    """
    Result of a scan. A rejection is accepted=False with no entry written.
    """
    accepted: bool
    participant_id: str
    participant_name: str
    scan_type: ScanType
    previous_location: Location
    current_location: Location
    entry: Optional[LogEntry] = None
    rejection: Optional[ScanRejection] = None

    @property
    def message(self) -> str:
        if self.rejection is not None:
            return REJECTION_MESSAGES[self.rejection]
        if self.current_location.is_camp:
            return f"{self.participant_name} returned to camp."
        return f"{self.participant_name} checked out to activity."


@dataclass
class BackfillResult:
    event_id: str
    checked: int
    corrected: int


class ScanTransitionEngine:
    """
    Applies scans to the participant state machine.

    Every accepted scan appends exactly one log entry and updates the
    cached location in the same transaction. The cached-location write is
    conditional on the location_version read at the start of the scan, so
    the loser of two simultaneous scans of the same badge gets a
    ConcurrentScanError instead of a duplicate transition.
    """

    def __init__(
        self,
        db_session_factory: sessionmaker,
        resolver: LocationResolver,
        on_location_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._db_session_factory = db_session_factory
        self._resolver = resolver
        self._on_location_change = on_location_change

    def handle_scan(
        self,
        event_id: str,
        qr_payload: str,
        scan_type: ScanType,
        leader_id: str,
        target_activity_id: Optional[str] = None,
    ) -> ScanOutcome:
        """
        Processes one scan.

        Raises:
            InvalidQrCodeError: empty payload
            ParticipantNotFoundError: no participant with this QR code in the event
            ActivityNotFoundError: departure target is not an activity of the event
            ValidationError: departure without target, missing leader id
            ConcurrentScanError: another scan moved the participant meanwhile
            SQLAlchemyError: storage failure (nothing persisted)
        """
        qr_code = normalize_qr_payload(qr_payload)
        if qr_code is None:
            raise InvalidQrCodeError("Invalid QR code: empty payload.")
        if not leader_id or not leader_id.strip():
            raise ValidationError("The scanning leader must be identified.")
        if scan_type == ScanType.DEPARTURE and not target_activity_id:
            raise ValidationError("A departure scan needs a target activity.")

        db_session: Session = self._db_session_factory()
        try:
            participant = ParticipantRepository(db_session).get_by_qr_code(event_id, qr_code)
            if participant is None:
                logger.info(
                    f"Scan with unknown QR code: event_id={event_id}, qr_code={qr_code[:40]}"
                )
                raise ParticipantNotFoundError("Invalid QR code: participant not found.")

            if scan_type == ScanType.DEPARTURE:
                activity = ActivityRepository(db_session).get(event_id, target_activity_id)
                if activity is None:
                    raise ActivityNotFoundError(f"Activity not found: {target_activity_id}")

            observed_version = participant.location_version
            current = self._resolver.current_location(participant.id, db_session=db_session)
            decision = decide_transition(current, scan_type, target_activity_id)

            if isinstance(decision, ScanRejection):
                logger.info(
                    f"Scan rejected: event_id={event_id}, participant_id={participant.id}, "
                    f"scan_type={scan_type.value}, location={current}, reason={decision.value}"
                )
                return ScanOutcome(
                    accepted=False,
                    participant_id=participant.id,
                    participant_name=participant.name,
                    scan_type=scan_type,
                    previous_location=current,
                    current_location=current,
                    rejection=decision,
                )

            entry = ActivityLogRepository(db_session).append(
                event_id=event_id,
                participant_id=participant.id,
                transition=decision,
                leader_id=leader_id.strip(),
            )
            new_location = decision.destination
            updated = ParticipantRepository(db_session).set_location_if_version(
                participant.id,
                new_location.as_cache_value(),
                observed_version,
            )
            if not updated:
                db_session.rollback()
                logger.warning(
                    f"Concurrent scan detected, nothing written: event_id={event_id}, "
                    f"participant_id={participant.id}, observed_version={observed_version}"
                )
                raise ConcurrentScanError(
                    "The participant was scanned by someone else at the same time. Please scan again."
                )

            db_session.commit()
            logger.info(
                f"Scan accepted: event_id={event_id}, participant_id={participant.id}, "
                f"type={entry.type.value}, from={current}, to={new_location}, "
                f"leader_id={entry.leader_id}, entry_id={entry.id}"
            )
        except SQLAlchemyError as e:
            logger.error(
                f"Storage error while recording scan: event_id={event_id}, "
                f"scan_type={scan_type.value}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            db_session.rollback()
            raise
        finally:
            db_session.close()

        self._notify(event_id)
        return ScanOutcome(
            accepted=True,
            participant_id=entry.participant_id,
            participant_name=participant.name,
            scan_type=scan_type,
            previous_location=current,
            current_location=new_location,
            entry=entry,
        )

    def backfill_locations(self, event_id: str) -> BackfillResult:
        """
        Rebuilds every participant's cached location from the log.

        Only rows that disagree with the log are written, so running it
        twice in a row changes nothing the second time.
        """
        db_session: Session = self._db_session_factory()
        try:
            participants_repo = ParticipantRepository(db_session)
            activity_ids = set(ActivityRepository(db_session).ids_for_event(event_id))
            participants = participants_repo.list_by_event(event_id)
            history = group_by_participant(
                ActivityLogRepository(db_session).list_by_participants([p.id for p in participants])
            )

            corrected = 0
            for participant in participants:
                expected = resolve_location(history.get(participant.id, []), activity_ids)
                cached = participant.current_location
                if cached != expected.as_cache_value():
                    logger.info(
                        f"Cached location corrected: participant_id={participant.id}, "
                        f"cached={cached}, log={expected}"
                    )
                    participants_repo.set_location(participant.id, expected.as_cache_value())
                    corrected += 1

            db_session.commit()
        except SQLAlchemyError as e:
            logger.error(
                f"Storage error during location backfill: event_id={event_id}, "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )
            db_session.rollback()
            raise
        finally:
            db_session.close()

        logger.info(
            f"Location backfill complete: event_id={event_id}, "
            f"checked={len(participants)}, corrected={corrected}"
        )
        if corrected:
            self._notify(event_id)
        return BackfillResult(event_id=event_id, checked=len(participants), corrected=corrected)

    def _notify(self, event_id: str) -> None:
        if self._on_location_change is not None:
            self._on_location_change(event_id)
