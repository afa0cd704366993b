from datetime import date

import pytest

from checkin.modules.attendance_resolver import AttendanceResolver
from checkin.modules.attendance_store import AttendanceStore
from checkin.modules.database_manager import DatabaseManager
from checkin.modules.qr_codec import QRPayloadCodec
from checkin.modules.roster_manager import RosterManager

BASE_URL = "http://testserver"
SCAN_DATE = date(2024, 5, 1)


@pytest.fixture()
def db(tmp_path):
    manager = DatabaseManager(tmp_path / "attendance_test.db")
    yield manager
    manager.close_all_connections()


@pytest.fixture()
def roster_manager(db):
    return RosterManager(db)


@pytest.fixture()
def store(db):
    return AttendanceStore(db)


@pytest.fixture()
def codec():
    return QRPayloadCodec(base_url=BASE_URL)


@pytest.fixture()
def resolver(codec):
    return AttendanceResolver(codec)


@pytest.fixture()
def seeded(roster_manager):
    """Two classes, one student (Ann Lee in c1) and one staff member."""
    roster_manager.create_class("Grade 5", class_id="c1")
    roster_manager.create_class("Grade 6", class_id="c2")
    roster_manager.create_student("Ann", "Lee", class_id="c1", student_id="s1")
    roster_manager.create_staff("Bob", "Ray", "Science", staff_id="t1")
    return roster_manager
