# QR Check-in Attendance System - Package
"""
QR code check-in for school attendance: payload encoding and decoding,
roster resolution with name fallback, and one-record-per-person-per-day
attendance writes.
"""

__version__ = "1.0.0"
__author__ = "QR Attendance Team"
__description__ = "QR code check-in and attendance reconciliation for students and staff"

# Import core components for easy access
from .modules.attendance_resolver import AttendanceResolver, ScanOutcome
from .modules.attendance_store import AttendanceStore
from .modules.database_manager import DatabaseManager
from .modules.errors import (
    AmbiguousNameMatch,
    CheckInError,
    DecodeError,
    ExpiredPayload,
    PersonNotFound,
    SinkError,
    ValidationError,
)
from .modules.identity import (
    AttendanceRecord,
    AttendanceStatus,
    IdentityReference,
    PersonKind,
    ResolvedPerson,
    RosterSnapshot,
    Staff,
    Student,
)
from .modules.qr_codec import QRPayloadCodec
from .modules.qr_generator import QRGenerator
from .modules.roster_manager import RosterManager
from .modules.scan_session import OpenCVCamera, ScanGuard, ScanningSession

__all__ = [
    'AttendanceResolver',
    'ScanOutcome',
    'AttendanceStore',
    'DatabaseManager',
    'AmbiguousNameMatch',
    'CheckInError',
    'DecodeError',
    'ExpiredPayload',
    'PersonNotFound',
    'SinkError',
    'ValidationError',
    'AttendanceRecord',
    'AttendanceStatus',
    'IdentityReference',
    'PersonKind',
    'ResolvedPerson',
    'RosterSnapshot',
    'Staff',
    'Student',
    'QRPayloadCodec',
    'QRGenerator',
    'RosterManager',
    'OpenCVCamera',
    'ScanGuard',
    'ScanningSession',
]
