"""
Roster Manager Module - QR Check-in Attendance System

This module owns the roster tables (classes, students, staff). It is the
roster source consumed by the attendance resolver: ``list_students`` and
``list_staff`` return the raw rows, ``snapshot`` returns them normalized into
a RosterSnapshot.

Ids are uuid4 strings assigned at creation time and never reused. Explicit
student and staff ids must match BARE_ID_PATTERN (letters, digits, `_`, `.`,
`-`, at most 128 characters) so a code holding only the id still resolves.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from checkin.modules.errors import ValidationError
from checkin.modules.identity import RosterSnapshot
from checkin.modules.qr_codec import BARE_ID_PATTERN


class RosterManager:
    """Minimal roster administration backing the check-in flow."""

    def __init__(self, database_manager):
        """
        Args:
            database_manager: Database manager instance
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _required(value: Optional[str], field: str) -> str:
        value = (value or '').strip()
        if not value:
            raise ValidationError(f"Missing required field: {field}", field=field)
        return value

    @staticmethod
    def _person_id(value: Optional[str]) -> str:
        value = '' if value is None else str(value).strip()
        if not value:
            return str(uuid.uuid4())
        if not BARE_ID_PATTERN.match(value):
            raise ValidationError(
                f"Invalid id {value!r}: use letters, digits, '_', '.' or '-' (max 128 characters)",
                field='id'
            )
        return value

    def create_class(self, name: str, description: str = '',
                     class_id: Optional[str] = None) -> Dict[str, Any]:
        record = {
            'id': class_id or str(uuid.uuid4()),
            'name': self._required(name, 'name'),
            'description': description or '',
        }
        self.db.execute_update(
            "INSERT INTO classes (id, name, description) VALUES (?, ?, ?)",
            (record['id'], record['name'], record['description'])
        )
        self.logger.info(f"Class created: {record['name']} ({record['id']})")
        return record

    def create_student(self, first_name: str, last_name: str,
                       class_id: Optional[str] = None,
                       student_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a student record.

        Args:
            first_name (str): Given name
            last_name (str): Family name
            class_id (str): Class the student attends, if any
            student_id (str): Explicit id matching BARE_ID_PATTERN, generated when omitted

        Returns:
            Dict[str, Any]: The stored row
        """
        record = {
            'id': self._person_id(student_id),
            'first_name': self._required(first_name, 'first_name'),
            'last_name': self._required(last_name, 'last_name'),
            'class_id': (class_id or '').strip() or None,
        }
        self.db.execute_update(
            "INSERT INTO students (id, first_name, last_name, class_id) VALUES (?, ?, ?, ?)",
            (record['id'], record['first_name'], record['last_name'], record['class_id'])
        )
        self.logger.info(f"Student created: {record['first_name']} {record['last_name']} ({record['id']})")
        return record

    def create_staff(self, first_name: str, last_name: str, department: str,
                     position: str = '', staff_id: Optional[str] = None) -> Dict[str, Any]:
        record = {
            'id': self._person_id(staff_id),
            'first_name': self._required(first_name, 'first_name'),
            'last_name': self._required(last_name, 'last_name'),
            'department': self._required(department, 'department'),
            'position': position or '',
        }
        self.db.execute_update(
            """INSERT INTO staff (id, first_name, last_name, department, position)
               VALUES (?, ?, ?, ?, ?)""",
            (record['id'], record['first_name'], record['last_name'],
             record['department'], record['position'])
        )
        self.logger.info(f"Staff created: {record['first_name']} {record['last_name']} ({record['id']})")
        return record

    def assign_student_class(self, student_id: str, class_id: Optional[str]) -> bool:
        """Move a student to another class (or to none)."""
        affected = self.db.execute_update(
            "UPDATE students SET class_id = ? WHERE id = ?",
            (class_id or None, student_id)
        )
        if affected:
            self.logger.info(f"Student {student_id} assigned to class {class_id}")
        else:
            self.logger.warning(f"No student found with ID: {student_id}")
        return affected > 0

    def list_students(self) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT id, first_name, last_name, class_id FROM students ORDER BY created_at, rowid"
        )

    def list_staff(self) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT id, first_name, last_name, department FROM staff ORDER BY created_at, rowid"
        )

    def list_classes(self) -> List[Dict[str, Any]]:
        return self.db.execute_query("SELECT id, name, description FROM classes ORDER BY name")

    def get_class_name(self, class_id: Optional[str]) -> Optional[str]:
        if not class_id:
            return None
        row = self.db.execute_query(
            "SELECT name FROM classes WHERE id = ?", (class_id,), fetch_all=False
        )
        return row['name'] if row else None

    def snapshot(self) -> RosterSnapshot:
        """Read the current roster and normalize it for resolution."""
        return RosterSnapshot.from_records(self.list_students(), self.list_staff())
