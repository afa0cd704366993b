"""
Identity Module - QR Check-in Attendance System

This module defines the value types shared by the payload codec, the
attendance resolver and the storage layer: person kinds, decoded identity
references, roster records, resolved people and attendance records.

Roster records arrive from the database (or any other roster source) as
loosely-typed dictionaries. They are normalized here, at the boundary, so the
resolver only ever sees the strict structures below.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from checkin.modules.errors import ValidationError


class PersonKind(str, Enum):
    STUDENT = 'student'
    STAFF = 'staff'

    @classmethod
    def parse(cls, value: Any) -> 'PersonKind':
        """Parse a kind from user input, raising ValidationError when unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown person type: {value!r} (expected 'student' or 'staff')",
                field='type'
            )


class AttendanceStatus(str, Enum):
    PRESENT = 'present'
    ABSENT = 'absent'
    TARDY = 'tardy'
    EXCUSED = 'excused'
    OTHER = 'other'

    @classmethod
    def parse(cls, value: Any) -> 'AttendanceStatus':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ', '.join(status.value for status in cls)
            raise ValidationError(
                f"Invalid attendance status: {value!r} (expected one of {valid})",
                field='status'
            )


def normalize_name(name: Optional[str]) -> str:
    """Collapse runs of whitespace so 'Ann  Lee ' and 'Ann Lee' compare equal."""
    return ' '.join((name or '').split())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, including the JavaScript 'Z' suffix."""
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class IdentityReference:
    """
    Identity decoded from a scanned payload.

    ``kind`` is None when the payload was a bare identifier and the resolver
    has to discover whether it belongs to a student or a staff member.
    ``display_name`` and ``class_or_dept_label`` are encode-time snapshots,
    used only as a matching fallback.
    """
    id: str
    kind: Optional[PersonKind] = None
    display_name: str = ''
    class_or_dept_label: str = ''
    issued_at: str = ''
    source_format: str = ''

    @property
    def issued_at_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.issued_at)


def _pick(record: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def _require(record: Dict[str, Any], label: str, *keys: str) -> str:
    value = _pick(record, *keys)
    if value is None:
        raise ValidationError(f"Roster record is missing required field: {label}", field=label)
    return value


@dataclass(frozen=True)
class Student:
    id: str
    first_name: str
    last_name: str
    class_id: Optional[str] = None

    kind = PersonKind.STUDENT

    @property
    def full_name(self) -> str:
        return normalize_name(f"{self.first_name} {self.last_name}")

    @property
    def context_id(self) -> Optional[str]:
        return self.class_id

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Student':
        return cls(
            id=_require(record, 'id', 'id'),
            first_name=_require(record, 'first_name', 'first_name', 'firstName'),
            last_name=_require(record, 'last_name', 'last_name', 'lastName'),
            class_id=_pick(record, 'class_id', 'classId'),
        )


@dataclass(frozen=True)
class Staff:
    id: str
    first_name: str
    last_name: str
    department: Optional[str] = None

    kind = PersonKind.STAFF

    @property
    def full_name(self) -> str:
        return normalize_name(f"{self.first_name} {self.last_name}")

    @property
    def context_id(self) -> Optional[str]:
        return self.department

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Staff':
        return cls(
            id=_require(record, 'id', 'id'),
            first_name=_require(record, 'first_name', 'first_name', 'firstName'),
            last_name=_require(record, 'last_name', 'last_name', 'lastName'),
            department=_pick(record, 'department'),
        )


Person = Union[Student, Staff]


@dataclass(frozen=True)
class RosterSnapshot:
    """Read-only view of the known students and staff at resolution time."""
    students: Tuple[Student, ...] = ()
    staff: Tuple[Staff, ...] = ()

    @classmethod
    def from_records(cls, students: Iterable[Any] = (),
                     staff: Iterable[Any] = ()) -> 'RosterSnapshot':
        return cls(
            students=tuple(
                s if isinstance(s, Student) else Student.from_record(s) for s in students
            ),
            staff=tuple(
                s if isinstance(s, Staff) else Staff.from_record(s) for s in staff
            ),
        )

    def people(self, kind: PersonKind) -> Tuple[Person, ...]:
        return self.students if kind == PersonKind.STUDENT else self.staff


@dataclass(frozen=True)
class ResolvedPerson:
    kind: PersonKind
    person: Person
    fallback_match: bool = False

    @property
    def id(self) -> str:
        return self.person.id

    @property
    def display_name(self) -> str:
        return self.person.full_name

    @property
    def context_id(self) -> Optional[str]:
        return self.person.context_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.kind.value,
            'first_name': self.person.first_name,
            'last_name': self.person.last_name,
            'name': self.display_name,
            'context_id': self.context_id,
            'fallback_match': self.fallback_match,
        }


@dataclass
class AttendanceRecord:
    """One attendance row; at most one exists per (kind, person_id, date)."""
    kind: PersonKind
    person_id: str
    status: AttendanceStatus
    date: date
    context_id: Optional[str] = None
    custom_label: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None

    @property
    def student_id(self) -> Optional[str]:
        return self.person_id if self.kind == PersonKind.STUDENT else None

    @property
    def staff_id(self) -> Optional[str]:
        return self.person_id if self.kind == PersonKind.STAFF else None

    @property
    def class_id(self) -> Optional[str]:
        return self.context_id if self.kind == PersonKind.STUDENT else None

    @property
    def department(self) -> Optional[str]:
        return self.context_id if self.kind == PersonKind.STAFF else None

    @property
    def label(self) -> str:
        if self.status == AttendanceStatus.OTHER and self.custom_label:
            return self.custom_label
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.kind.value,
            'student_id': self.student_id,
            'staff_id': self.staff_id,
            'class_id': self.class_id,
            'department': self.department,
            'status': self.status.value,
            'custom_label': self.custom_label,
            'date': self.date.isoformat(),
            'timestamp': self.timestamp.isoformat(),
        }
