import logging
import time
from datetime import datetime
from uuid import uuid4
from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Dict, List, Optional
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from ..config import AppConfig
from ..core.engine import CheckinEngine
from ..core.errors import (
    ActivityNotFoundError,
    CheckinError,
    ConcurrentScanError,
    DuplicateActivityError,
    DuplicateParticipantError,
    EventNotFoundError,
    InvalidQrCodeError,
    ParticipantNotFoundError,
    ResetNotAllowedError,
    ValidationError,
)
from ..core.models import LocationSource, ParticipantType, ScanType
from ..core.roster_manager import CascadeResult

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    InvalidQrCodeError: 400,
    ResetNotAllowedError: 403,
    EventNotFoundError: 404,
    ParticipantNotFoundError: 404,
    ActivityNotFoundError: 404,
    DuplicateParticipantError: 409,
    DuplicateActivityError: 409,
    ConcurrentScanError: 409,
}


class EventCreate(BaseModel):
    name: str
    description: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    id: Optional[str] = None


class EventResponse(BaseModel):
    id: str
    name: str
    description: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    active: bool
    created_by: Optional[str] = None
    created_at: datetime


class ActivityCreate(BaseModel):
    name: str
    description: str = ""
    location: str = ""


class ActivityUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None


class ActivityResponse(BaseModel):
    id: str
    event_id: str
    name: str
    description: str
    location: str
    created_at: datetime


class ParticipantCreate(BaseModel):
    name: str
    church: str
    type: ParticipantType
    assigned_leaders: List[str] = []


class ParticipantUpdate(BaseModel):
    type: Optional[ParticipantType] = None
    assigned_leaders: Optional[List[str]] = None


class ParticipantResponse(BaseModel):
    id: str
    event_id: str
    name: str
    church: str
    type: str
    assigned_leaders: List[str]
    qr_code: str
    current_location: str
    created_at: datetime


class ImportRequest(BaseModel):
    csv_text: str


class ImportRowError(BaseModel):
    line: int
    message: str


class ImportResponse(BaseModel):
    created: int
    skipped: int
    errors: List[ImportRowError]


class ScanRequest(BaseModel):
    qr_code: str
    scan_type: ScanType
    activity_id: Optional[str] = None  # target activity, required for departures


class ScanResponse(BaseModel):
    accepted: bool
    participant_id: str
    participant_name: str
    scan_type: str
    previous_location: str
    current_location: str
    log_type: Optional[str] = None
    entry_id: Optional[int] = None
    reason: Optional[str] = None
    message: str


class LocationResponse(BaseModel):
    participant_id: str
    location: str
    at_camp: bool


class LogItem(BaseModel):
    id: int
    type: str
    activity_id: str
    activity_name: Optional[str] = None
    from_activity_id: Optional[str] = None
    from_activity_name: Optional[str] = None
    leader_id: str
    timestamp: datetime


class PartitionResponse(BaseModel):
    event_id: str
    source: str
    camp: List[str]
    by_activity: Dict[str, List[str]]


class EngagementResponse(BaseModel):
    event_id: str
    counts: Dict[str, int]


class ReportActivity(BaseModel):
    activity_id: str
    name: str
    location: str
    occupancy: int
    engagement: int


class ReportResponse(BaseModel):
    event_id: str
    generated_at: str
    source: str
    total_participants: int
    by_type: Dict[str, int]
    by_church: Dict[str, int]
    at_camp: int
    away: int
    activities: List[ReportActivity]


class CascadeResponse(BaseModel):
    deleted_logs: int
    deleted_participants: int
    deleted_activities: int
    relocated_participants: int


class BackfillResponse(BaseModel):
    event_id: str
    checked: int
    corrected: int


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Generates a unique request_id per request and adds it to the logs
    and to the response headers.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = uuid4().hex[:16]
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Request processed: request_id={request_id}, "
            f"method={request.method}, path={request.url.path}, "
            f"status={response.status_code}, duration_ms={duration_ms:.2f}"
        )

        return response


def require_api_key(config: AppConfig, x_api_key: Optional[str]) -> None:
    """
    Validates the API key according to the environment.

    In production (ENV=prod) the key is always required.
    In development (ENV=dev) only when API_KEY is configured.
    """
    expected_key = config.api_key or ""

    if config.env == "prod":
        if not x_api_key or x_api_key != expected_key:
            logger.warning("Unauthorized access attempt in PRODUCTION")
            raise HTTPException(status_code=401, detail="Invalid API key")
    else:
        if expected_key and expected_key.strip():
            if x_api_key != expected_key:
                logger.warning("Unauthorized access attempt in DEV")
                raise HTTPException(status_code=401, detail="Invalid API key")
        else:
            logger.debug("API_KEY not set, accepting unauthenticated request (development mode)")


def _event_response(event) -> EventResponse:
    return EventResponse(
        id=event.id,
        name=event.name,
        description=event.description or "",
        start_date=event.start_date,
        end_date=event.end_date,
        active=bool(event.active),
        created_by=event.created_by,
        created_at=event.created_at,
    )


def _activity_response(activity) -> ActivityResponse:
    return ActivityResponse(
        id=activity.id,
        event_id=activity.event_id,
        name=activity.name,
        description=activity.description or "",
        location=activity.location or "",
        created_at=activity.created_at,
    )


def _participant_response(participant) -> ParticipantResponse:
    return ParticipantResponse(
        id=participant.id,
        event_id=participant.event_id,
        name=participant.name,
        church=participant.church,
        type=participant.type,
        assigned_leaders=participant.assigned_leader_list,
        qr_code=participant.qr_code,
        current_location=participant.current_location,
        created_at=participant.created_at,
    )


def _cascade_response(result: CascadeResult) -> CascadeResponse:
    return CascadeResponse(
        deleted_logs=result.deleted_logs,
        deleted_participants=result.deleted_participants,
        deleted_activities=result.deleted_activities,
        relocated_participants=result.relocated_participants,
    )


def create_app(config: Optional[AppConfig] = None, engine: Optional[CheckinEngine] = None) -> FastAPI:
    """
    Creates the FastAPI application and injects the main dependencies
    (config + engine).
    """
    config = config or AppConfig.load_from_env()
    engine = engine or CheckinEngine(config=config)

    app = FastAPI(
        title="Camp Check-in API",
        version="0.1.0",
        description="Participant location tracking for camp events.",
    )

    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(CheckinError)
    async def checkin_error_handler(request: Request, exc: CheckinError):
        request_id = getattr(request.state, "request_id", "unknown")
        status_code = ERROR_STATUS.get(type(exc), 400)
        logger.info(
            f"Request refused: request_id={request_id}, path={request.url.path}, "
            f"status={status_code}, error={type(exc).__name__}: {exc}"
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            f"Storage error: request_id={request_id}, path={request.url.path}, "
            f"error={type(exc).__name__}: {exc}",
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal storage error. Please try again."},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            f"Unexpected error: request_id={request_id}, path={request.url.path}, "
            f"error={type(exc).__name__}: {exc}",
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal error. Please try again."})

    @app.get("/health")
    def health_check():
        """
        Health check endpoint for monitoring and Docker healthchecks.
        """
        db_ok = engine.check_database()
        cache_ok = engine.check_report_cache()
        return {
            "status": "healthy" if (db_ok and cache_ok) else "degraded",
            "database": "ok" if db_ok else "error",
            "report_cache": "ok" if cache_ok else "error",
        }

    # Events

    @app.post("/events", response_model=EventResponse, status_code=201)
    def create_event(
        payload: EventCreate,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_leader_id: Optional[str] = Header(default=None, alias="X-Leader-Id"),
    ) -> EventResponse:
        require_api_key(config, x_api_key)
        event = engine.roster.create_event(
            name=payload.name,
            description=payload.description,
            start_date=payload.start_date,
            end_date=payload.end_date,
            created_by=x_leader_id,
            event_id=payload.id,
        )
        return _event_response(event)

    @app.get("/events", response_model=List[EventResponse])
    def list_events() -> List[EventResponse]:
        return [_event_response(event) for event in engine.roster.list_events()]

    @app.get("/events/active", response_model=EventResponse)
    def get_active_event() -> EventResponse:
        event = engine.roster.get_active_event()
        if event is None:
            raise HTTPException(status_code=404, detail="No active event found.")
        return _event_response(event)

    @app.get("/events/{event_id}", response_model=EventResponse)
    def get_event(event_id: str) -> EventResponse:
        return _event_response(engine.roster.get_event(event_id))

    @app.post("/events/{event_id}/activate", response_model=EventResponse)
    def activate_event(
        event_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> EventResponse:
        require_api_key(config, x_api_key)
        return _event_response(engine.roster.set_active_event(event_id))

    @app.delete("/events/{event_id}", response_model=CascadeResponse)
    def delete_event(
        event_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> CascadeResponse:
        require_api_key(config, x_api_key)
        return _cascade_response(engine.roster.delete_event(event_id))

    # Activities

    @app.post("/events/{event_id}/activities", response_model=ActivityResponse, status_code=201)
    def create_activity(
        event_id: str,
        payload: ActivityCreate,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> ActivityResponse:
        require_api_key(config, x_api_key)
        activity = engine.roster.create_activity(
            event_id=event_id,
            name=payload.name,
            description=payload.description,
            location=payload.location,
        )
        return _activity_response(activity)

    @app.get("/events/{event_id}/activities", response_model=List[ActivityResponse])
    def list_activities(event_id: str) -> List[ActivityResponse]:
        engine.roster.get_event(event_id)
        return [_activity_response(a) for a in engine.roster.list_activities(event_id)]

    @app.patch("/events/{event_id}/activities/{activity_id}", response_model=ActivityResponse)
    def update_activity(
        event_id: str,
        activity_id: str,
        payload: ActivityUpdate,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> ActivityResponse:
        require_api_key(config, x_api_key)
        activity = engine.roster.update_activity(
            event_id,
            activity_id,
            name=payload.name,
            description=payload.description,
            location=payload.location,
        )
        return _activity_response(activity)

    @app.delete("/events/{event_id}/activities/{activity_id}", response_model=CascadeResponse)
    def delete_activity(
        event_id: str,
        activity_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> CascadeResponse:
        require_api_key(config, x_api_key)
        return _cascade_response(engine.roster.delete_activity(event_id, activity_id))

    # Participants

    @app.post("/events/{event_id}/participants", response_model=ParticipantResponse, status_code=201)
    def create_participant(
        event_id: str,
        payload: ParticipantCreate,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> ParticipantResponse:
        require_api_key(config, x_api_key)
        participant = engine.roster.create_participant(
            event_id=event_id,
            name=payload.name,
            church=payload.church,
            participant_type=payload.type,
            assigned_leaders=payload.assigned_leaders,
        )
        return _participant_response(participant)

    @app.get("/events/{event_id}/participants", response_model=List[ParticipantResponse])
    def list_participants(
        event_id: str,
        church: Optional[str] = None,
        location: Optional[str] = None,
    ) -> List[ParticipantResponse]:
        engine.roster.get_event(event_id)
        participants = engine.roster.list_participants(event_id, church=church, location=location)
        return [_participant_response(p) for p in participants]

    @app.post("/events/{event_id}/participants/import", response_model=ImportResponse)
    def import_participants(
        event_id: str,
        payload: ImportRequest,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> ImportResponse:
        require_api_key(config, x_api_key)
        request_id = getattr(request.state, "request_id", "unknown")
        result = engine.import_participants(event_id, payload.csv_text)
        logger.info(
            f"Participants imported: request_id={request_id}, event_id={event_id}, "
            f"created={result.created}, skipped={result.skipped}, errors={len(result.errors)}"
        )
        return ImportResponse(
            created=result.created,
            skipped=result.skipped,
            errors=[ImportRowError(line=e.line, message=e.message) for e in result.errors],
        )

    @app.get("/events/{event_id}/participants/{participant_id}", response_model=ParticipantResponse)
    def get_participant(event_id: str, participant_id: str) -> ParticipantResponse:
        return _participant_response(engine.roster.get_participant(event_id, participant_id))

    @app.patch("/events/{event_id}/participants/{participant_id}", response_model=ParticipantResponse)
    def update_participant(
        event_id: str,
        participant_id: str,
        payload: ParticipantUpdate,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> ParticipantResponse:
        require_api_key(config, x_api_key)
        participant = engine.roster.update_participant(
            event_id,
            participant_id,
            participant_type=payload.type,
            assigned_leaders=payload.assigned_leaders,
        )
        return _participant_response(participant)

    @app.delete("/events/{event_id}/participants/{participant_id}", response_model=CascadeResponse)
    def delete_participant(
        event_id: str,
        participant_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> CascadeResponse:
        require_api_key(config, x_api_key)
        return _cascade_response(engine.roster.delete_participant(event_id, participant_id))

    @app.get("/events/{event_id}/participants/{participant_id}/location", response_model=LocationResponse)
    def get_participant_location(event_id: str, participant_id: str) -> LocationResponse:
        participant = engine.roster.get_participant(event_id, participant_id)
        location = engine.resolver.current_location(participant.id)
        return LocationResponse(
            participant_id=participant.id,
            location=location.as_cache_value(),
            at_camp=location.is_camp,
        )

    @app.get("/events/{event_id}/participants/{participant_id}/logs", response_model=List[LogItem])
    def get_participant_logs(event_id: str, participant_id: str) -> List[LogItem]:
        participant = engine.roster.get_participant(event_id, participant_id)
        return [
            LogItem(
                id=item.entry.id,
                type=item.entry.type.value,
                activity_id=item.entry.activity_id,
                activity_name=item.activity_name,
                from_activity_id=item.entry.from_activity_id,
                from_activity_name=item.from_activity_name,
                leader_id=item.entry.leader_id,
                timestamp=item.entry.timestamp,
            )
            for item in engine.resolver.participant_history(participant.id)
        ]

    # Scanning

    @app.post("/events/{event_id}/scans", response_model=ScanResponse)
    def scan_endpoint(
        event_id: str,
        payload: ScanRequest,
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
        x_leader_id: Optional[str] = Header(default=None, alias="X-Leader-Id"),
    ) -> ScanResponse:
        """
        Records a departure or return scan.

        A rejection ("already at this activity", "already at camp") is a
        normal 200 response with accepted=false; nothing is written.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        require_api_key(config, x_api_key)

        logger.info(
            f"Received /scans request: request_id={request_id}, event_id={event_id}, "
            f"scan_type={payload.scan_type.value}, activity_id={payload.activity_id}, "
            f"leader_id={x_leader_id}"
        )

        start_time = time.time()
        try:
            outcome = engine.scan(
                event_id=event_id,
                qr_payload=payload.qr_code,
                scan_type=payload.scan_type,
                leader_id=x_leader_id or "",
                target_activity_id=payload.activity_id,
            )
        except CheckinError:
            raise
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Error recording scan: request_id={request_id}, event_id={event_id}, "
                f"duration_ms={duration_ms:.2f}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            raise HTTPException(
                status_code=500,
                detail="Internal error while recording the scan. Please scan again.",
            )

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Scan processed: request_id={request_id}, participant_id={outcome.participant_id}, "
            f"accepted={outcome.accepted}, location={outcome.current_location}, "
            f"duration_ms={duration_ms:.2f}"
        )

        return ScanResponse(
            accepted=outcome.accepted,
            participant_id=outcome.participant_id,
            participant_name=outcome.participant_name,
            scan_type=outcome.scan_type.value,
            previous_location=outcome.previous_location.as_cache_value(),
            current_location=outcome.current_location.as_cache_value(),
            log_type=outcome.entry.type.value if outcome.entry else None,
            entry_id=outcome.entry.id if outcome.entry else None,
            reason=outcome.rejection.value if outcome.rejection else None,
            message=outcome.message,
        )

    # Locations and reporting

    @app.get("/events/{event_id}/locations", response_model=PartitionResponse)
    def get_locations(event_id: str, source: LocationSource = LocationSource.CACHE) -> PartitionResponse:
        engine.roster.get_event(event_id)
        partition = engine.resolver.partition_by_location(event_id, source=source)
        return PartitionResponse(
            event_id=event_id,
            source=partition.source.value,
            camp=partition.camp,
            by_activity=partition.by_activity,
        )

    @app.get("/events/{event_id}/engagement", response_model=EngagementResponse)
    def get_engagement(event_id: str) -> EngagementResponse:
        engine.roster.get_event(event_id)
        return EngagementResponse(event_id=event_id, counts=engine.resolver.engagement_counts(event_id))

    @app.get("/events/{event_id}/report", response_model=ReportResponse)
    def get_report(event_id: str, source: LocationSource = LocationSource.CACHE) -> ReportResponse:
        return ReportResponse(**engine.event_report(event_id, source=source))

    @app.post("/events/{event_id}/locations/backfill", response_model=BackfillResponse)
    def backfill_locations(
        event_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> BackfillResponse:
        require_api_key(config, x_api_key)
        result = engine.backfill_locations(event_id)
        return BackfillResponse(event_id=result.event_id, checked=result.checked, corrected=result.corrected)

    @app.post("/events/{event_id}/reset", response_model=CascadeResponse)
    def reset_test_data(
        event_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ) -> CascadeResponse:
        require_api_key(config, x_api_key)
        return _cascade_response(engine.reset_test_data(event_id))

    return app
