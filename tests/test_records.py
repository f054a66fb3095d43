import csv
import io
import json
from pathlib import Path

import pytest

from onboarding.errors import RecordParseError
from onboarding.records import (
    FarmerRecord,
    detect_format,
    ingest_file,
    normalize_phone,
    parse_records,
    render_results,
    validate_batch,
)


def test_csv_headers_are_normalized_and_defaults_applied() -> None:
    data = "First Name,Last-Name,Phone Number,Date.Of.Birth,Gender\nAsha,Rao,+91 98765 43210,19900102,Female\n"

    records = parse_records(data, "csv")

    assert len(records) == 1
    record = records[0]
    assert (record.first_name, record.last_name) == ("Asha", "Rao")
    assert record.phone_number == "9876543210"
    assert record.date_of_birth == "1990-01-02"
    assert record.gender == "female"
    assert record.country == "India"
    assert record.external_id == "FARMER_9876543210_7"


def test_csv_detects_semicolon_and_pads_short_rows() -> None:
    data = "first_name;last_name;phone_number;city\nAsha;Rao;9876543210\n\nRavi;Kumar;9876543211;Indore\n"

    records = parse_records(data.encode("utf-8"), "CSV")

    assert [r.first_name for r in records] == ["Asha", "Ravi"]
    assert records[0].city == ""
    assert records[1].city == "Indore"


def test_csv_unknown_columns_become_custom_fields() -> None:
    records = parse_records("first_name,last_name,phone_number,crop\nAsha,Rao,9876543210,wheat\n", "csv")
    assert records[0].custom_fields == {"crop": "wheat"}


def test_csv_without_required_headers_is_rejected() -> None:
    with pytest.raises(RecordParseError, match="phone_number"):
        parse_records("first_name,last_name\nAsha,Rao\n", "csv")


def test_json_accepts_array_or_single_object() -> None:
    single = parse_records(json.dumps({"first_name": "Asha", "last_name": "Rao", "phone_number": "9876543210"}), "json")
    many = parse_records(
        json.dumps([{"first_name": "A", "last_name": "B", "phone_number": "9876543210"}] * 2),
        "JSON",
    )

    assert len(single) == 1
    assert len(many) == 2


@pytest.mark.parametrize(
    ("data", "fmt", "fragment"),
    [
        ("", "json", "empty input"),
        ("{not json", "json", "failed to parse JSON"),
        ("[]", "json", "no farmer records"),
        ("[1, 2]", "json", "not a JSON object"),
        ("first_name,last_name,phone_number\n", "csv", "no farmer records"),
        ("a", "xml", "unsupported input format"),
    ],
)
def test_parse_errors(data, fmt, fragment) -> None:
    with pytest.raises(RecordParseError, match=fragment):
        parse_records(data, fmt)


def test_max_records_is_enforced() -> None:
    rows = "\n".join(f"F{i},L,98765432{i:02d}" for i in range(3))
    with pytest.raises(RecordParseError, match="maximum record limit of 2"):
        parse_records("first_name,last_name,phone_number\n" + rows, "csv", max_records=2)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("9876543210", "9876543210"),
        ("+91-98765-43210", "9876543210"),
        ("091 9876543210", "9876543210"),
        ("98765 4321", "987654321"),
    ],
)
def test_normalize_phone(raw, expected) -> None:
    assert normalize_phone(raw) == expected


def test_from_dict_keeps_known_fields_and_collects_the_rest() -> None:
    record = FarmerRecord.from_dict(
        {"first_name": " Asha ", "phone_number": 9876543210, "custom_fields": {"a": 1}, "village": "Kota"}
    )

    assert record.first_name == "Asha"
    assert record.phone_number == "9876543210"
    assert record.custom_fields == {"a": 1, "village": "Kota"}
    assert FarmerRecord.from_dict(record.to_dict()) == record


def test_validate_batch_reports_every_problem() -> None:
    records = [
        FarmerRecord(first_name="A", last_name="B", phone_number="9876543210"),
        FarmerRecord(first_name="", last_name="", phone_number="9876543211"),
        FarmerRecord(first_name="C", last_name="D", phone_number="9876543210"),
        FarmerRecord(first_name="E", last_name="F", phone_number="9876543212", email="nope"),
    ]

    report = validate_batch(records)

    assert not report.is_valid
    assert report.valid_records == 1
    assert [(e.record_index, e.code) for e in report.errors] == [
        (1, "MISSING_FIELDS"),
        (2, "DUPLICATE"),
        (3, "INVALID_FORMAT"),
    ]
    assert report.errors[0].field == "first_name,last_name"
    assert "first seen at record 0" in report.errors[1].reason


def test_render_results_csv_and_json() -> None:
    rows = [
        {"record_index": 0, "status": "SUCCESS", "farmer_id": "FMR1", "account_id": "acct-1", "retry_count": 0},
        {"record_index": 1, "status": "FAILED", "error_code": "INVALID_FORMAT", "error_message": "bad phone"},
    ]

    parsed = list(csv.DictReader(io.StringIO(render_results(rows, "csv"))))
    assert list(parsed[0]) == ["record_index", "status", "farmer_id", "account_id", "error_code", "error_message"]
    assert parsed[1]["account_id"] == ""

    payload = json.loads(render_results(rows, "json"))
    assert payload[0]["farmer_id"] == "FMR1"
    assert "retry_count" not in payload[0]


def test_ingest_file_infers_format(tmp_path: Path) -> None:
    path = tmp_path / "farmers.json"
    path.write_text(json.dumps([{"first_name": "A", "last_name": "B", "phone_number": "9876543210"}]), encoding="utf-8")

    records, fmt = ingest_file(path)

    assert fmt == "JSON"
    assert records[0].first_name == "A"
    with pytest.raises(RecordParseError):
        detect_format(tmp_path / "farmers.txt")
    with pytest.raises(FileNotFoundError):
        ingest_file(tmp_path / "missing.csv")
