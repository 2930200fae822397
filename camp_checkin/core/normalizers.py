"""
Functions to normalize and validate user-provided roster data.
"""
import re
from typing import Iterable, List, Optional, Union

from .models import ParticipantType


def normalize_qr_payload(raw: Optional[str]) -> Optional[str]:
    """
    Cleans a decoded QR payload.

    The format is opaque to the service: only surrounding whitespace is
    removed. Returns None when nothing is left.
    """
    if raw is None:
        return None
    payload = raw.strip()
    return payload or None


def generate_deterministic_qr_code(event_id: str, name: str, church: str) -> str:
    """
    Builds the stable badge payload of a participant.

    Same event + name + church always gives the same code, so reprinted
    badges keep working.

    Examples:
        ("evt1", "Ana  Souza", "First Church") -> "evt1-ana-souza-first-church"
    """
    raw = f"{event_id}-{name.strip().lower()}-{church.strip().lower()}"
    return re.sub(r"\s+", "-", raw)


def normalize_participant_type(raw: Optional[str]) -> Optional[ParticipantType]:
    """
    Accepts "student"/"leader" in any case. Returns None if invalid.
    """
    if raw is None:
        return None
    value = str(raw).strip().lower()
    try:
        return ParticipantType(value)
    except ValueError:
        return None


def parse_assigned_leaders(raw: Union[str, Iterable[str], None]) -> List[str]:
    """
    Parses leader names from "A, B" text or a list, dropping blanks and
    repeated names while keeping the original order.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = list(raw)

    leaders: List[str] = []
    for item in items:
        # The list is stored comma separated
        name = " ".join(str(item).replace(",", " ").split())
        if name and name not in leaders:
            leaders.append(name)
    return leaders


def normalize_required_text(raw: Optional[str]) -> Optional[str]:
    """
    Trims text and collapses inner whitespace. Returns None when empty.
    """
    if raw is None:
        return None
    text = " ".join(str(raw).split())
    return text or None
