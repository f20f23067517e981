"""Dynamic field catalogue and resolution against student/school records."""
from __future__ import annotations

import datetime as _dt
import re
from typing import Callable, Dict, Mapping, NamedTuple, Optional, Tuple

from util import is_missing, normalise_string

TEXT = "text"
IMAGE = "image"
QR = "qr"

DATE_FORMAT = "%d/%m/%Y"

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")

Record = Mapping[str, object]


class DisplayValue(str):
    """A resolved field value; compares equal to its plain string."""

    kind: str

    def __new__(cls, value: str = "", kind: str = TEXT) -> "DisplayValue":
        instance = super().__new__(cls, value)
        instance.kind = kind
        return instance

    @property
    def is_empty(self) -> bool:
        return not self


class FieldSpec(NamedTuple):
    token: str
    label: str
    kind: str
    source: str
    keys: Tuple[str, ...]
    is_date: bool = False
    prefix: str = ""
    fallback: Optional[Callable[[Record], str]] = None
    max_length: Optional[int] = None


def _full_name(record: Record) -> str:
    parts = [normalise_string(record.get(key)) for key in ("first_name", "last_name")]
    return " ".join(part for part in parts if part)


FIELD_CATALOG: Dict[str, FieldSpec] = {
    spec.token: spec
    for spec in (
        FieldSpec(
            "student_name", "Student Name", TEXT, "student", ("student_name", "name"),
            fallback=_full_name, max_length=50,
        ),
        FieldSpec("father_name", "Father's Name", TEXT, "student", ("father_name",), max_length=50),
        FieldSpec("date_of_birth", "Date of Birth", TEXT, "student", ("date_of_birth", "dob"), is_date=True),
        FieldSpec("roll_number", "Roll Number", TEXT, "student", ("roll_number", "roll_no")),
        FieldSpec("student_id", "Student ID", TEXT, "student", ("student_id", "id")),
        FieldSpec("class", "Class", TEXT, "student", ("class", "class_name", "grade")),
        FieldSpec("section", "Section", TEXT, "student", ("section",)),
        FieldSpec("address", "Address", TEXT, "student", ("address", "current_address"), max_length=100),
        FieldSpec("phone_number", "Phone Number", TEXT, "student", ("phone_number", "phone")),
        FieldSpec("blood_group", "Blood Group", TEXT, "student", ("blood_group",)),
        FieldSpec("gender", "Gender", TEXT, "student", ("gender",)),
        FieldSpec("photo", "Student Photo", IMAGE, "student", ("photo_url", "photo", "student_photo")),
        FieldSpec("qr_code", "QR Code", QR, "student", ("qr_data", "student_id", "id")),
        FieldSpec("card_number", "Card Number", TEXT, "student", ("card_number", "student_id", "id"), prefix="CARD-"),
        FieldSpec("issue_date", "Issue Date", TEXT, "student", ("issue_date",), is_date=True),
        FieldSpec("valid_until", "Valid Until", TEXT, "student", ("valid_until", "expiry_date"), is_date=True),
        FieldSpec("school_name", "School Name", TEXT, "school", ("school_name", "name")),
        FieldSpec("school_logo", "School Logo", IMAGE, "school", ("logo_url", "school_logo", "logo")),
        FieldSpec("school_address", "School Address", TEXT, "school", ("address",)),
        FieldSpec("school_phone", "School Phone", TEXT, "school", ("phone_number", "phone", "whatsapp_number")),
        FieldSpec("school_website", "School Website", TEXT, "school", ("website",)),
    )
}

TOKEN_ALIASES = {
    "dob": "date_of_birth",
    "roll_no": "roll_number",
    "phone": "phone_number",
    "student_photo": "photo",
}


def lookup_field(token: str) -> Optional[FieldSpec]:
    key = (token or "").strip().lower()
    return FIELD_CATALOG.get(TOKEN_ALIASES.get(key, key))


def is_known_token(token: str) -> bool:
    return lookup_field(token) is not None


def format_date(value: object) -> str:
    if isinstance(value, _dt.datetime):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, _dt.date):
        return value.strftime(DATE_FORMAT)
    text = normalise_string(value)
    match = _ISO_DATE_RE.match(text)
    if match:
        try:
            parsed = _dt.date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return text
        return parsed.strftime(DATE_FORMAT)
    return text


def format_value(value: object) -> str:
    if is_missing(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet readers hand back whole numbers as floats.
        return str(int(value))
    return normalise_string(value)


def _first_present(record: Optional[Record], keys: Tuple[str, ...]) -> object:
    if not record:
        return None
    for key in keys:
        value = record.get(key)
        if not is_missing(value) and normalise_string(value) != "":
            return value
    return None


def resolve(token: str, student: Optional[Record], school: Optional[Record] = None) -> DisplayValue:
    """Resolve ``token`` to a display value.

    Unknown tokens and missing record values resolve to an empty text value;
    this never raises.
    """

    spec = lookup_field(token)
    if spec is None:
        return DisplayValue("", TEXT)

    record = school if spec.source == "school" else student
    raw = _first_present(record, spec.keys)
    if raw is None and spec.fallback is not None and record:
        raw = spec.fallback(record) or None
    if raw is None:
        return DisplayValue("", spec.kind)

    if spec.is_date:
        text = format_date(raw)
    else:
        text = format_value(raw)
    if spec.max_length is not None:
        text = text[: spec.max_length].rstrip()
    if text and spec.prefix:
        text = spec.prefix + text
    return DisplayValue(text, spec.kind)


def resolve_text(token: str, student: Optional[Record], school: Optional[Record] = None) -> str:
    return str(resolve(token, student, school))


def substitute_placeholders(text: str, student: Optional[Record], school: Optional[Record] = None) -> str:
    """Replace ``{{token}}`` placeholders; unknown placeholders stay verbatim."""

    if not text or "{{" not in text:
        return text or ""

    def _replace(match: re.Match) -> str:
        token = match.group(1)
        if not is_known_token(token):
            return match.group(0)
        return str(resolve(token, student, school))

    return PLACEHOLDER_PATTERN.sub(_replace, text)


_title_case_regex = re.compile(r"\b\w+\b")


def custom_title_case(value: str) -> str:
    """Title-case ``value``, upper-casing words of two letters or fewer."""

    def _transform(match: re.Match) -> str:
        word = match.group(0)
        if len(word) <= 2:
            return word.upper()
        return word[0].upper() + word[1:].lower()

    return _title_case_regex.sub(_transform, value.lower())


def apply_text_transform(value: str, transform: str) -> str:
    if transform == "uppercase":
        return value.upper()
    if transform == "lowercase":
        return value.lower()
    if transform == "title":
        return custom_title_case(value)
    return value
