import json
from datetime import datetime, time, timezone

import pytest

from builders import GOAL_ID, QUESTION_ID, goal_doc, payload, payload_doc, point_doc, question_doc
from backup_merge.backup.codec import (
    BackupError,
    conflict_report_filename,
    decode_payload,
    encode_payload,
    merged_backup_filename,
)
from backup_merge.backup.validator import validate_against_schema
from backup_merge.schemas.backup import ChoiceValue, NumericValue


def test_decode_accepts_bytes_text_and_documents():
    document = payload_doc(goal_doc())
    raw = json.dumps(document)
    for data in (raw.encode("utf-8"), raw, document):
        decoded = decode_payload(data)
        assert str(decoded.goals[0].id) == GOAL_ID
        assert decoded.exportedAt == datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("data", [b"", "   "])
def test_decode_rejects_empty_input(data):
    with pytest.raises(BackupError) as excinfo:
        decode_payload(data)
    assert excinfo.value.code == "empty"


def test_decode_rejects_malformed_json():
    with pytest.raises(BackupError) as excinfo:
        decode_payload(b"{not json")
    assert excinfo.value.code == "invalid"


def test_decode_rejects_structurally_invalid_documents():
    document = payload_doc(goal_doc())
    del document["goals"][0]["title"]
    with pytest.raises(BackupError) as excinfo:
        decode_payload(document)
    assert excinfo.value.code == "invalid"
    assert "title" in excinfo.value.message


def test_decode_rejects_newer_versions():
    with pytest.raises(BackupError) as excinfo:
        decode_payload(payload_doc(goal_doc(), version=3))
    assert excinfo.value.code == "unsupported_version"
    assert "(3)" in excinfo.value.message


def test_decode_rejects_duplicate_goal_ids():
    with pytest.raises(BackupError) as excinfo:
        decode_payload(payload_doc(goal_doc(), goal_doc()))
    assert "duplicate goal id" in excinfo.value.message


def test_decode_rejects_values_that_do_not_match_the_question():
    point = point_doc("00000000-0000-4000-8000-000000000001", "2024-03-01T08:00:00Z")
    point["value"] = {"kind": "text", "text": "far"}
    with pytest.raises(BackupError) as excinfo:
        decode_payload(payload_doc(goal_doc(data_points=[point])))
    assert excinfo.value.code == "invalid"


def test_legacy_flat_values_are_lifted_into_tagged_values():
    numeric = {
        "id": "00000000-0000-4000-8000-000000000001",
        "goalID": GOAL_ID,
        "questionID": QUESTION_ID,
        "timestamp": "2024-03-01T08:00:00Z",
        "numericValue": 5,
        "numericDelta": 2,
        "textValue": None,
        "boolValue": None,
        "selectedOptions": None,
        "timeValue": None,
        "mood": 4,
        "location": "Home",
    }
    choice_question = question_doc(
        question_id="9a8b7c6d-3333-4e5f-8a9b-000000000003",
        response_type="multipleChoice",
        options=["Water", "Tea"],
    )
    choice = dict(
        numeric,
        id="00000000-0000-4000-8000-000000000002",
        questionID=choice_question["id"],
        numericValue=None,
        numericDelta=None,
        selectedOptions=["Water", "Tea", "Water"],
    )
    clock_question = question_doc(question_id="9a8b7c6d-4444-4e5f-8a9b-000000000004", response_type="time")
    clock = dict(
        numeric,
        id="00000000-0000-4000-8000-000000000003",
        questionID=clock_question["id"],
        numericValue=None,
        numericDelta=None,
        timeValue="2024-03-01T22:45:00Z",
    )
    backup = decode_payload(
        payload_doc(goal_doc(questions=[question_doc(), choice_question, clock_question], data_points=[numeric, choice, clock]))
    )
    values = [point.value for point in backup.goals[0].dataPoints]
    assert values[0] == NumericValue(number=5, delta=2)
    assert values[1] == ChoiceValue(selected=["Tea", "Water"])
    assert values[2].timeOfDay == time(22, 45)
    assert backup.goals[0].dataPoints[0].mood == 4


def test_encoded_payload_is_stable_and_sorted():
    backup = payload(goal_doc(data_points=[point_doc("00000000-0000-4000-8000-000000000001", "2024-03-01T08:00:00Z", 5)]))
    encoded = encode_payload(backup)
    assert encoded == encode_payload(decode_payload(encoded))
    document = json.loads(encoded)
    assert list(document) == sorted(document)
    assert document["exportedAt"] == "2024-03-02T10:00:00Z"
    assert document["goals"][0]["dataPoints"][0]["value"] == {"delta": None, "kind": "numeric", "number": 5.0}
    assert validate_against_schema("backup", document)["valid"]


def test_default_file_names():
    now = datetime(2024, 3, 5, 12, 30, 15, 123456, tzinfo=timezone.utc)
    assert merged_backup_filename(now) == "merged-backup-2024-03-05T12:30:15Z.json"
    assert conflict_report_filename(now) == "merge-conflict-report-2024-03-05T12:30:15Z.json"


def test_validator_reports_error_paths():
    result = validate_against_schema("backup", {"version": "one", "exportedAt": "x", "goals": []})
    assert not result["valid"]
    assert any(error.startswith("version") for error in result["errors"])


def test_legacy_point_with_every_field_filled_follows_its_question():
    point = {
        "id": "00000000-0000-4000-8000-000000000001",
        "goalID": GOAL_ID,
        "questionID": QUESTION_ID,
        "timestamp": "2024-03-01T08:00:00Z",
        "numericValue": 5,
        "numericDelta": 5,
        "textValue": "Feeling good",
        "boolValue": True,
        "selectedOptions": ["Water"],
        "timeValue": "2024-03-01T09:00:00Z",
    }
    backup = decode_payload(payload_doc(goal_doc(data_points=[point])))
    assert backup.goals[0].dataPoints[0].value == NumericValue(number=5, delta=5)


def test_offsetless_timestamps_are_read_as_utc():
    backup = decode_payload(payload_doc(goal_doc(updated_at="2024-03-02T08:00:00", createdAt="2024-01-01T09:00:00+01:00")))
    goal = backup.goals[0]
    assert goal.updatedAt == datetime(2024, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert goal.createdAt.utcoffset().total_seconds() == 0
    assert goal.createdAt == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
