"""
Attendance Resolver Module - QR Check-in Attendance System

This module turns a decoded identity into a committed attendance record.

Resolution looks the id up in the roster snapshot and, when the id is unknown
(typically a code printed from another dataset), falls back to an exact match
on the full name, flagging the result so the UI can tell the operator.

Writes follow the one-record-per-person-per-day rule: the existing record for
the day is removed and a fresh one inserted, so marking the same person twice
leaves exactly one row reflecting the latest call.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from checkin.modules.errors import (
    AmbiguousNameMatch,
    ExpiredPayload,
    PersonNotFound,
    SinkError,
    ValidationError,
)
from checkin.modules.identity import (
    AttendanceRecord,
    AttendanceStatus,
    IdentityReference,
    PersonKind,
    ResolvedPerson,
    RosterSnapshot,
    normalize_name,
)
from checkin.modules.qr_codec import QRPayloadCodec


def _text(value) -> str:
    """Form values arrive as JSON scalars; 0 is a valid id."""
    return '' if value is None else str(value).strip()


@dataclass
class ScanOutcome:
    """Result of one decode-and-check-in attempt, shaped for the UI."""
    success: bool
    message: str
    payload: str = ''
    person: Optional[ResolvedPerson] = None
    record: Optional[AttendanceRecord] = None
    issued_at: Optional[str] = None
    error: Optional[Exception] = None
    duplicate: bool = False

    @property
    def fallback_match(self) -> bool:
        return bool(self.person and self.person.fallback_match)

    def to_dict(self) -> Dict[str, Any]:
        if not self.success and self.error is not None and hasattr(self.error, 'to_dict'):
            return self.error.to_dict()
        data = {
            'success': self.success,
            'message': self.message,
            'fallback_match': self.fallback_match,
            'issued_at': self.issued_at,
        }
        if self.duplicate:
            data['error_type'] = 'duplicate_scan'
        if self.person:
            data['person'] = self.person.to_dict()
        if self.record:
            data['attendance'] = self.record.to_dict()
        return data


class AttendanceResolver:
    """
    Resolves identities against the roster and writes attendance records
    through an attendance sink.

    The sink must offer ``delete_attendance(kind, person_id, date)`` and
    ``insert_attendance(record)``; when it also offers
    ``replace_attendance(record)`` the delete and insert run atomically.
    """

    def __init__(self, codec: Optional[QRPayloadCodec] = None,
                 max_payload_age_hours: Optional[float] = None,
                 clock=None):
        self.codec = codec or QRPayloadCodec()
        self.max_payload_age_hours = max_payload_age_hours
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Resolution

    def _find_in(self, reference: IdentityReference, roster: RosterSnapshot,
                 kind: PersonKind, allow_fallback: bool) -> Optional[ResolvedPerson]:
        people = roster.people(kind)
        for person in people:
            if person.id == reference.id:
                return ResolvedPerson(kind=kind, person=person)

        wanted = normalize_name(reference.display_name)
        if not allow_fallback or not wanted:
            return None

        matches = [person for person in people if person.full_name == wanted]
        if len(matches) > 1:
            raise AmbiguousNameMatch(wanted, kind.value, [p.id for p in matches])
        if matches:
            self.logger.warning(
                f"{kind.value} id {reference.id} not in roster; matched '{wanted}' "
                f"by name to {matches[0].id}"
            )
            return ResolvedPerson(kind=kind, person=matches[0], fallback_match=True)
        return None

    def resolve(self, reference: IdentityReference, roster: RosterSnapshot) -> ResolvedPerson:
        """
        Find the roster entry an identity reference points at.

        Args:
            reference (IdentityReference): Decoded identity
            roster (RosterSnapshot): Current roster

        Returns:
            ResolvedPerson: Matched person, ``fallback_match`` set for name matches

        Raises:
            AmbiguousNameMatch: the name fallback found several people
            PersonNotFound: nothing matched
        """
        if not reference.id:
            raise ValidationError('Identity reference has no id', field='id')

        if reference.kind is not None:
            kinds = [reference.kind]
        else:
            kinds = [PersonKind.STUDENT, PersonKind.STAFF]

        # Id matches in every candidate roster take precedence over a name match.
        for kind in kinds:
            found = self._find_in(reference, roster, kind, allow_fallback=False)
            if found:
                return found
        for kind in kinds:
            found = self._find_in(reference, roster, kind, allow_fallback=True)
            if found:
                return found

        raise PersonNotFound(
            person_id=reference.id,
            display_name=reference.display_name,
            kind=reference.kind.value if reference.kind else None,
            student_count=len(roster.students),
            staff_count=len(roster.staff),
        )

    # ------------------------------------------------------------------
    # Writes

    def _write(self, record: AttendanceRecord, sink) -> AttendanceRecord:
        replace = getattr(sink, 'replace_attendance', None)
        if replace is not None:
            return replace(record)

        sink.delete_attendance(record.kind, record.person_id, record.date)
        try:
            return sink.insert_attendance(record)
        except SinkError as e:
            self.logger.error(
                f"Attendance for {record.kind.value} {record.person_id} on {record.date} "
                f"was removed but the replacement failed: {e}"
            )
            raise SinkError(
                f"Previous attendance for {record.date} was removed but the new record "
                f"could not be saved; this person currently has no record for the day. "
                f"Cause: {e.message}",
                phase='insert',
                degraded=True
            ) from e

    def check_in(self, resolved: ResolvedPerson, on_date: date, sink) -> AttendanceRecord:
        """
        Mark a resolved person present for ``on_date``.

        The context (class or department) comes from the roster entry, never
        from the scanned payload.
        """
        record = AttendanceRecord(
            kind=resolved.kind,
            person_id=resolved.id,
            context_id=resolved.context_id,
            status=AttendanceStatus.PRESENT,
            date=on_date,
            timestamp=self._clock(),
        )
        committed = self._write(record, sink)
        self.logger.info(
            f"Checked in {resolved.kind.value} {resolved.id} ({resolved.display_name}) "
            f"for {on_date} in {resolved.context_id or 'no context'}"
        )
        return committed

    def manual_mark(self, kind, person_id: str, context_id: Optional[str], status,
                    on_date: date, sink, custom_label: Optional[str] = None) -> AttendanceRecord:
        """
        Record any status for a person, as set from the attendance grid.

        Args:
            kind: 'student' or 'staff'
            person_id (str): Roster id
            context_id (str): Class id or department to attribute the record to
            status: AttendanceStatus or its string value
            on_date (date): Calendar day
            sink: Attendance sink
            custom_label (str): Required for the 'other' status

        Returns:
            AttendanceRecord: Committed record
        """
        kind = PersonKind.parse(kind)
        status = AttendanceStatus.parse(status)
        person_id = _text(person_id)
        if not person_id:
            raise ValidationError('Person id is required', field='id')

        label = _text(custom_label)
        if status == AttendanceStatus.OTHER:
            if not label:
                raise ValidationError("A custom label is required for the 'other' status",
                                      field='custom_label')
        else:
            label = ''

        record = AttendanceRecord(
            kind=kind,
            person_id=person_id,
            context_id=_text(context_id) or None,
            status=status,
            custom_label=label or None,
            date=on_date,
            timestamp=self._clock(),
        )
        committed = self._write(record, sink)
        self.logger.info(f"Marked {kind.value} {person_id} as {record.label} for {on_date}")
        return committed

    # ------------------------------------------------------------------
    # Decode + check in

    def _check_payload_age(self, reference: IdentityReference):
        if self.max_payload_age_hours is None:
            return
        issued = reference.issued_at_datetime
        if issued is None:
            return
        if self._clock() - issued > timedelta(hours=self.max_payload_age_hours):
            raise ExpiredPayload(reference.issued_at, self.max_payload_age_hours)

    def scan(self, raw_text: str, roster: RosterSnapshot, sink,
             on_date: Optional[date] = None) -> ScanOutcome:
        """
        Decode a payload, resolve it and check the person in.

        Raises any CheckInError; callers at the UI boundary turn it into a
        failed ScanOutcome.
        """
        reference = self.codec.decode(raw_text)
        self._check_payload_age(reference)
        resolved = self.resolve(reference, roster)
        on_date = on_date or self._clock().date()
        record = self.check_in(resolved, on_date, sink)

        message = f"{resolved.display_name} marked as present"
        if resolved.context_id:
            message += f" in {resolved.context_id}"
        if resolved.fallback_match:
            message += (
                " (matched by name: the scanned id is not in the current roster, "
                "the code may come from a different dataset)"
            )
        return ScanOutcome(
            success=True,
            message=message,
            payload=raw_text,
            person=resolved,
            record=record,
            issued_at=reference.issued_at or None,
        )
