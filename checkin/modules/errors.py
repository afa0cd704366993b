"""
Error Module - QR Check-in Attendance System

Exception hierarchy raised by the codec, resolver and storage layers.
Every error carries an ``error_type`` string so the HTTP layer and the
scanning session can report failures to end users in a uniform shape.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple


class CheckInError(Exception):
    """Base class for every failure surfaced to the scanning UI."""

    error_type = 'system_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'message': self.message,
            'error_type': self.error_type,
        }


class DecodeError(CheckInError):
    """Scanned or pasted text matched none of the supported payload formats."""

    error_type = 'decode_error'

    def __init__(self, message: str, attempts: Sequence[Tuple[str, str]] = ()):
        super().__init__(message)
        self.attempts: List[Tuple[str, str]] = list(attempts)

    @classmethod
    def from_attempts(cls, attempts: Sequence[Tuple[str, str]],
                      heading: str = 'Unrecognized QR code. Formats tried:') -> 'DecodeError':
        lines = [heading]
        for format_name, reason in attempts:
            lines.append(f"- {format_name}: {reason}")
        return cls('\n'.join(lines), attempts)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['attempts'] = [
            {'format': format_name, 'reason': reason}
            for format_name, reason in self.attempts
        ]
        return data


class PersonNotFound(CheckInError):
    """No roster entry matched by id or by a unique full name."""

    error_type = 'person_not_found'

    def __init__(self, person_id: str, display_name: Optional[str],
                 kind: Optional[str], student_count: int, staff_count: int):
        self.person_id = person_id
        self.display_name = display_name or None
        self.kind = kind
        self.student_count = student_count
        self.staff_count = staff_count

        who = {'student': 'Student', 'staff': 'Staff member'}.get(kind, 'Person')
        message = f"{who} not found with ID: {person_id}"
        if self.display_name:
            message += f" (no unique match for name '{self.display_name}' either)"
        message += (
            f". The roster currently holds {student_count} students and "
            f"{staff_count} staff; the code may have been generated against a "
            f"different dataset."
        )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'person_id': self.person_id,
            'display_name': self.display_name,
            'kind': self.kind,
            'student_count': self.student_count,
            'staff_count': self.staff_count,
        })
        return data


class AmbiguousNameMatch(CheckInError):
    """Name fallback found several people sharing the same full name."""

    error_type = 'ambiguous_name'

    def __init__(self, display_name: str, kind: str, candidate_ids: Sequence[str]):
        self.display_name = display_name
        self.kind = kind
        self.candidate_ids = list(candidate_ids)
        super().__init__(
            f"{len(self.candidate_ids)} {kind} records are named '{display_name}'; "
            f"refusing to guess which one the code belongs to"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'display_name': self.display_name,
            'kind': self.kind,
            'candidate_ids': self.candidate_ids,
        })
        return data


class ValidationError(CheckInError):
    """Input failed validation (missing identity fields, bad status, ...)."""

    error_type = 'validation_error'

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['field'] = self.field
        return data


class ExpiredPayload(ValidationError):
    """Payload is older than the configured maximum age."""

    error_type = 'expired_payload'

    def __init__(self, issued_at: str, max_age_hours: float):
        super().__init__(
            f"QR code issued at {issued_at} is older than {max_age_hours:g} hours",
            field='timestamp'
        )
        self.issued_at = issued_at
        self.max_age_hours = max_age_hours


class SinkError(CheckInError):
    """
    Attendance storage failed.

    ``degraded`` is set when the existing record for the day was removed but
    the replacement could not be written, leaving the person with no record.
    """

    error_type = 'sink_error'

    def __init__(self, message: str, phase: str, degraded: bool = False):
        super().__init__(message)
        self.phase = phase
        self.degraded = degraded

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({'phase': self.phase, 'degraded': self.degraded})
        return data
