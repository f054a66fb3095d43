import csv
from dataclasses import asdict, dataclass, field
import io
import json
from pathlib import Path
import re

from onboarding.errors import RecordParseError, ValidationFailed
from onboarding.schemas import InputFormat, InvalidRecord, ValidationReport


REQUIRED_FIELDS = ("first_name", "last_name", "phone_number")
VALID_GENDERS = {"male", "female", "other", "m", "f"}
DEFAULT_COUNTRY = "India"
CSV_DELIMITERS = (",", ";", "\t")
RESULT_COLUMNS = ("record_index", "status", "farmer_id", "account_id", "error_code", "error_message")
TEMPLATE_COLUMNS = (
    "first_name",
    "last_name",
    "phone_number",
    "email",
    "date_of_birth",
    "gender",
    "street_address",
    "city",
    "state",
    "postal_code",
    "land_ownership_type",
    "external_id",
)
TEMPLATE_EXAMPLE = (
    "John",
    "Doe",
    "9876543210",
    "john.doe@example.com",
    "1990-01-15",
    "male",
    "123 Farm Street",
    "Mumbai",
    "Maharashtra",
    "400001",
    "owned",
    "FARMER001",
)

_NON_DIGITS = re.compile(r"\D")
_PHONE_FORMAT_ERROR = "invalid phone number format: must be 10 digits starting with 6-9"


@dataclass
class FarmerRecord:
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    email: str = ""
    date_of_birth: str = ""
    gender: str = ""
    street_address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = DEFAULT_COUNTRY
    land_ownership_type: str = ""
    external_id: str = ""
    password: str = ""
    custom_fields: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "FarmerRecord":
        record = cls()
        raw_custom = data.get("custom_fields")
        custom = dict(raw_custom) if isinstance(raw_custom, dict) else {}
        for key, value in data.items():
            if key == "custom_fields":
                continue
            if key in _KNOWN_FIELDS:
                setattr(record, key, "" if value is None else str(value).strip())
            else:
                custom[key] = value
        record.custom_fields = custom
        return record

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


_KNOWN_FIELDS = {name for name in FarmerRecord.__dataclass_fields__ if name != "custom_fields"}


def phone_digits(phone: str) -> str:
    return _NON_DIGITS.sub("", phone or "")


def normalize_phone(phone: str) -> str:
    digits = phone_digits(phone)
    if len(digits) == 12 and digits.startswith("91"):
        return digits[2:]
    if len(digits) == 13 and digits.startswith("091"):
        return digits[3:]
    return digits


def normalize_date(value: str) -> str:
    if len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value


def _apply_defaults(record: FarmerRecord) -> FarmerRecord:
    record.phone_number = normalize_phone(record.phone_number)
    record.date_of_birth = normalize_date(record.date_of_birth)
    record.gender = record.gender.lower()
    if not record.country:
        record.country = DEFAULT_COUNTRY
    if not record.external_id:
        record.external_id = f"FARMER_{record.phone_number}_{len(record.first_name) + len(record.last_name)}"
    return record


def check_record(record: FarmerRecord) -> str:
    """Apply the per-record field rules and return the 10-digit phone number."""
    missing = [name for name in REQUIRED_FIELDS if not str(getattr(record, name)).strip()]
    if missing:
        raise ValidationFailed(
            f"missing required fields: {', '.join(missing)}",
            code="MISSING_FIELDS",
            problems=missing,
        )

    digits = normalize_phone(record.phone_number)
    if len(digits) != 10 or digits[0] not in "6789":
        raise ValidationFailed(_PHONE_FORMAT_ERROR, problems=["phone_number"])

    if record.email and ("@" not in record.email or "." not in record.email):
        raise ValidationFailed("invalid email format", problems=["email"])

    if record.gender and record.gender.lower() not in VALID_GENDERS:
        raise ValidationFailed("invalid gender: must be male, female or other", problems=["gender"])

    return digits


def _normalize_header(header: str) -> str:
    name = header.strip().lower()
    for char in (" ", "-", "."):
        name = name.replace(char, "_")
    return name


def _detect_delimiter(text: str) -> str:
    sample = text[:1000]
    counts = {delimiter: sample.count(delimiter) for delimiter in CSV_DELIMITERS}
    best = max(counts, key=counts.get)
    return best if counts[best] else ","


def _parse_csv(text: str, max_records: int) -> list[FarmerRecord]:
    reader = csv.reader(io.StringIO(text), delimiter=_detect_delimiter(text), skipinitialspace=True)
    try:
        rows = list(reader)
    except csv.Error as exc:
        raise RecordParseError(f"failed to read CSV: {exc}") from exc

    if not rows:
        raise RecordParseError("no records found in CSV")

    headers = [_normalize_header(h) for h in rows[0]]
    missing = [name for name in REQUIRED_FIELDS if name not in headers]
    if missing:
        raise RecordParseError(f"invalid CSV headers: missing required fields: {', '.join(missing)}")

    records: list[FarmerRecord] = []
    for row in rows[1:]:
        if not any(cell.strip() for cell in row):
            continue
        if len(records) >= max_records:
            raise RecordParseError(f"exceeded maximum record limit of {max_records}")

        # Short rows are padded, long rows trimmed to the header width.
        cells = (row + [""] * len(headers))[: len(headers)]
        data = {header: cell.strip() for header, cell in zip(headers, cells) if cell.strip()}
        records.append(_apply_defaults(FarmerRecord.from_dict(data)))

    if not records:
        raise RecordParseError("no farmer records found in CSV")
    return records


def _parse_json(text: str, max_records: int) -> list[FarmerRecord]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RecordParseError(f"failed to parse JSON: {exc}") from exc

    rows = payload if isinstance(payload, list) else [payload]
    if not rows:
        raise RecordParseError("no farmer records found in JSON")
    if len(rows) > max_records:
        raise RecordParseError(f"exceeded maximum record limit of {max_records}")

    records: list[FarmerRecord] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise RecordParseError(f"record {index} is not a JSON object")
        records.append(_apply_defaults(FarmerRecord.from_dict(row)))
    return records


def parse_records(data: bytes | str, fmt: str, max_records: int = 10000) -> list[FarmerRecord]:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise RecordParseError(f"input is not valid UTF-8: {exc}") from exc

    if not data.strip():
        raise RecordParseError("empty input")

    try:
        input_format = InputFormat(fmt.upper())
    except ValueError as exc:
        raise RecordParseError(f"unsupported input format: {fmt}") from exc

    if input_format is InputFormat.CSV:
        return _parse_csv(data, max_records)
    return _parse_json(data, max_records)


def detect_format(path: Path) -> str:
    suffix = path.suffix.lower().lstrip(".")
    if suffix in {"csv", "json"}:
        return suffix.upper()
    raise RecordParseError(f"cannot infer input format from file name: {path.name}")


def ingest_file(path: Path, fmt: str | None = None, max_records: int = 10000) -> tuple[list[FarmerRecord], str]:
    if not path.exists():
        raise FileNotFoundError(f"input file not found: {path}")
    input_format = (fmt or detect_format(path)).upper()
    return parse_records(path.read_bytes(), input_format, max_records), input_format


def validate_batch(records: list[FarmerRecord]) -> ValidationReport:
    """Dry run of the field rules plus duplicate phones within the batch."""
    errors: list[InvalidRecord] = []
    first_seen: dict[str, int] = {}

    for index, record in enumerate(records):
        try:
            phone = check_record(record)
        except ValidationFailed as exc:
            errors.append(InvalidRecord(index, ",".join(exc.problems) or "record", exc.message, exc.code))
            continue

        if phone in first_seen:
            errors.append(
                InvalidRecord(
                    index,
                    "phone_number",
                    f"duplicate phone number in batch (first seen at record {first_seen[phone]})",
                    "DUPLICATE",
                )
            )
            continue
        first_seen[phone] = index

    invalid_indices = {error.record_index for error in errors}
    return ValidationReport(
        total_records=len(records),
        valid_records=len(records) - len(invalid_indices),
        errors=errors,
    )


def render_results(rows: list[dict[str, object]], fmt: str) -> str:
    selected = [{column: row.get(column) for column in RESULT_COLUMNS} for row in rows]
    if fmt.lower() == "json":
        return json.dumps(selected, indent=2, sort_keys=True) + "\n"

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=RESULT_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for row in selected:
        writer.writerow({key: "" if value is None else value for key, value in row.items()})
    return buffer.getvalue()


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        outfile.write(content)



def render_template(fmt: str = "csv", include_example: bool = True) -> str:
    """Empty upload file with every supported column, optionally with one sample row."""
    kind = fmt.lower()
    rows = [dict(zip(TEMPLATE_COLUMNS, TEMPLATE_EXAMPLE))] if include_example else []
    if kind == "json":
        if not rows:
            rows = [dict.fromkeys(TEMPLATE_COLUMNS, "")]
        return json.dumps(rows, indent=2) + "\n"
    if kind != "csv":
        raise RecordParseError(f"unsupported template format: {fmt}")

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=TEMPLATE_COLUMNS, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()
