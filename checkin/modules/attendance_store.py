"""
Attendance Store Module - QR Check-in Attendance System

SQLite-backed attendance sink. Records are keyed by (type, person, date);
``replace_attendance`` removes the day's existing record and inserts the new
one inside a single transaction. Storage failures are raised as SinkError.
"""

import logging
import sqlite3
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from checkin.modules.errors import SinkError
from checkin.modules.identity import AttendanceRecord, AttendanceStatus, PersonKind


def _person_column(kind: PersonKind) -> str:
    return 'student_id' if kind == PersonKind.STUDENT else 'staff_id'


class AttendanceStore:
    """Attendance record sink used by AttendanceResolver."""

    def __init__(self, database_manager):
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> AttendanceRecord:
        kind = PersonKind(row['type'])
        return AttendanceRecord(
            id=row['id'],
            kind=kind,
            person_id=row['student_id'] if kind == PersonKind.STUDENT else row['staff_id'],
            context_id=row['class_id'] if kind == PersonKind.STUDENT else row['department'],
            status=AttendanceStatus(row['status']),
            custom_label=row['custom_label'],
            date=date.fromisoformat(row['date']),
            timestamp=datetime.fromisoformat(row['timestamp']),
        )

    @staticmethod
    def _insert_params(record: AttendanceRecord) -> tuple:
        return (
            record.id, record.kind.value, record.student_id, record.staff_id,
            record.class_id, record.department, record.status.value,
            record.custom_label, record.date.isoformat(), record.timestamp.isoformat(),
        )

    _INSERT_SQL = """INSERT INTO attendance_records
        (id, type, student_id, staff_id, class_id, department, status,
         custom_label, date, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

    def delete_attendance(self, kind: PersonKind, person_id: str, on_date: date) -> int:
        """
        Remove the record for a person on a day.

        Returns:
            int: Number of rows removed (0 or 1)
        """
        try:
            removed = self.db.execute_update(
                f"DELETE FROM attendance_records WHERE type = ? AND {_person_column(kind)} = ? AND date = ?",
                (kind.value, person_id, on_date.isoformat())
            )
        except sqlite3.Error as e:
            raise SinkError(f"Failed to delete existing attendance: {e}", phase='delete') from e
        if removed:
            self.logger.debug(f"Removed {removed} attendance record(s) for {kind.value} {person_id} on {on_date}")
        return removed

    def insert_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        """Insert a record and return it as committed (with its id)."""
        record.id = record.id or str(uuid.uuid4())
        try:
            self.db.execute_update(self._INSERT_SQL, self._insert_params(record))
        except sqlite3.Error as e:
            raise SinkError(f"Failed to insert attendance record: {e}", phase='insert') from e
        return record

    def replace_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        """
        Delete the person's record for the day and insert ``record`` as one
        transaction. Either both happen or neither does.
        """
        record.id = record.id or str(uuid.uuid4())
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    f"DELETE FROM attendance_records WHERE type = ? AND {_person_column(record.kind)} = ? AND date = ?",
                    (record.kind.value, record.person_id, record.date.isoformat())
                )
                conn.execute(self._INSERT_SQL, self._insert_params(record))
        except sqlite3.Error as e:
            raise SinkError(f"Failed to record attendance: {e}", phase='replace') from e
        return record

    def get_attendance(self, kind: PersonKind, person_id: str,
                       on_date: date) -> Optional[AttendanceRecord]:
        row = self.db.execute_query(
            f"SELECT * FROM attendance_records WHERE type = ? AND {_person_column(kind)} = ? AND date = ?",
            (kind.value, person_id, on_date.isoformat()),
            fetch_all=False
        )
        return self._row_to_record(row) if row else None

    def list_attendance(self, on_date: Optional[date] = None,
                        kind: Optional[PersonKind] = None) -> List[AttendanceRecord]:
        clauses, params = [], []
        if on_date is not None:
            clauses.append('date = ?')
            params.append(on_date.isoformat())
        if kind is not None:
            clauses.append('type = ?')
            params.append(kind.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        rows = self.db.execute_query(
            f"SELECT * FROM attendance_records {where} ORDER BY timestamp DESC",
            tuple(params)
        )
        return [self._row_to_record(row) for row in rows]
