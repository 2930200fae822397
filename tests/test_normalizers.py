from camp_checkin.core.models import ParticipantType
from camp_checkin.core.normalizers import (
    generate_deterministic_qr_code,
    normalize_participant_type,
    normalize_qr_payload,
    normalize_required_text,
    parse_assigned_leaders,
)


def test_qr_payload():
    assert normalize_qr_payload("  abc-123 \n") == "abc-123"
    assert normalize_qr_payload("   ") is None
    assert normalize_qr_payload(None) is None


def test_deterministic_qr_code():
    first = generate_deterministic_qr_code("evt1", "Ana  Souza", "First Church")
    second = generate_deterministic_qr_code("evt1", " ana souza ", "FIRST CHURCH ")

    assert first == "evt1-ana-souza-first-church"
    assert second == first
    assert generate_deterministic_qr_code("evt2", "Ana Souza", "First Church") != first


def test_participant_type():
    assert normalize_participant_type(" Student ") == ParticipantType.STUDENT
    assert normalize_participant_type("LEADER") == ParticipantType.LEADER
    assert normalize_participant_type("camper") is None
    assert normalize_participant_type(None) is None


def test_assigned_leaders():
    assert parse_assigned_leaders("Joe,  Mary , ,Joe") == ["Joe", "Mary"]
    assert parse_assigned_leaders(["Pastor  Joe", "Smith, Ann"]) == ["Pastor Joe", "Smith Ann"]
    assert parse_assigned_leaders(None) == []
    assert parse_assigned_leaders("") == []


def test_required_text():
    assert normalize_required_text("  Lake   Trip ") == "Lake Trip"
    assert normalize_required_text(" \t ") is None
    assert normalize_required_text(None) is None
