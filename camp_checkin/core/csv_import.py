import io
import logging
from dataclasses import dataclass, field
from typing import List
import pandas as pd
from .errors import DuplicateParticipantError, ValidationError
from .normalizers import normalize_participant_type, normalize_required_text, parse_assigned_leaders
from .roster_manager import RosterManager

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("name", "church", "type")
LEADERS_COLUMN = "assignedleaders"


@dataclass
class CsvParticipantRow:
    line: int
    name: str
    church: str
    type: str
    assigned_leaders: List[str] = field(default_factory=list)


@dataclass
class CsvRowError:
    line: int
    message: str


@dataclass
class ParsedCsv:
    rows: List[CsvParticipantRow] = field(default_factory=list)
    errors: List[CsvRowError] = field(default_factory=list)


@dataclass
class ImportResult:
    created: int = 0
    skipped: int = 0
    errors: List[CsvRowError] = field(default_factory=list)


def parse_participants_csv(csv_text: str) -> ParsedCsv:
    """
    Parses a participant roster.

    Headers are trimmed and lower-cased; name, church and type are
    required, assignedLeaders is an optional comma separated list.
    Invalid rows are reported with their line number (header = line 1)
    and left out.

    Raises:
        ValidationError: empty file or missing required columns
    """
    if not csv_text or not csv_text.strip():
        raise ValidationError("CSV file is empty.")

    try:
        df = pd.read_csv(
            io.StringIO(csv_text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValidationError(f"CSV parsing error: {e}")

    df.columns = df.columns.str.strip().str.lower()
    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValidationError(f"Missing required columns in CSV: {', '.join(missing)}")

    parsed = ParsedCsv()
    for position, (_, row) in enumerate(df.iterrows()):
        line = position + 2
        name = normalize_required_text(row["name"])
        church = normalize_required_text(row["church"])
        raw_type = row["type"]

        if not name or not church or not str(raw_type).strip():
            parsed.errors.append(CsvRowError(line=line, message="Missing required fields in CSV"))
            continue

        kind = normalize_participant_type(raw_type)
        if kind is None:
            parsed.errors.append(CsvRowError(
                line=line,
                message=f"Invalid participant type: {raw_type}. Must be 'student' or 'leader'",
            ))
            continue

        leaders = parse_assigned_leaders(row[LEADERS_COLUMN]) if LEADERS_COLUMN in df.columns else []
        parsed.rows.append(CsvParticipantRow(
            line=line,
            name=name,
            church=church,
            type=kind.value,
            assigned_leaders=leaders,
        ))

    logger.debug(f"CSV parsed: rows={len(parsed.rows)}, errors={len(parsed.errors)}")
    return parsed


def import_participants_csv(roster: RosterManager, event_id: str, csv_text: str) -> ImportResult:
    """
    Creates the participants of a CSV roster one by one.

    Participants already in the event (same name and church) are skipped.
    """
    parsed = parse_participants_csv(csv_text)
    roster.get_event(event_id)

    result = ImportResult(errors=list(parsed.errors))
    for row in parsed.rows:
        try:
            roster.create_participant(
                event_id=event_id,
                name=row.name,
                church=row.church,
                participant_type=row.type,
                assigned_leaders=row.assigned_leaders,
            )
            result.created += 1
        except DuplicateParticipantError:
            result.skipped += 1
        except ValidationError as e:
            result.errors.append(CsvRowError(line=row.line, message=str(e)))

    logger.info(
        f"CSV import finished: event_id={event_id}, created={result.created}, "
        f"skipped={result.skipped}, errors={len(result.errors)}"
    )
    return result
