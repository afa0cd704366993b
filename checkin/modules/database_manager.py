"""
Database Manager Module - QR Check-in Attendance System

SQLite storage shared by the roster and the attendance store. Each thread gets
its own connection, except that an in-memory database is shared by all
threads. The schema is created on startup and is safe to apply to an
existing database.

Features:
- Per-thread SQLite connections with foreign keys enabled
- One locked connection for ':memory:' so threaded servers see the same data
- Roster and attendance schema, including the one-record-per-day index
- Row helpers returning plain dictionaries
- Explicit transactions for multi-statement writes
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager, nullcontext

SCHEMA = (
    """CREATE TABLE IF NOT EXISTS classes (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )""",
    """CREATE TABLE IF NOT EXISTS students (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        class_id TEXT REFERENCES classes(id) ON DELETE SET NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )""",
    """CREATE TABLE IF NOT EXISTS staff (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        department TEXT NOT NULL,
        position TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )""",
    # student_id / staff_id are not foreign keys: records outlive roster edits.
    """CREATE TABLE IF NOT EXISTS attendance_records (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK (type IN ('student', 'staff')),
        student_id TEXT,
        staff_id TEXT,
        class_id TEXT,
        department TEXT,
        status TEXT NOT NULL,
        custom_label TEXT,
        date DATE NOT NULL,
        timestamp TIMESTAMP NOT NULL,
        CHECK ((student_id IS NULL) != (staff_id IS NULL))
    )""",
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_attendance_person_day
        ON attendance_records(type, COALESCE(student_id, staff_id), date)""",
    "CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance_records(date)",
    "CREATE INDEX IF NOT EXISTS idx_students_class ON students(class_id)",
)


class DatabaseManager:
    """
    Owns the SQLite connections and the table layout used by RosterManager
    and AttendanceStore.
    """

    def __init__(self, db_path):
        """
        Args:
            db_path: Database file path, or ':memory:'
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        # An in-memory database exists only inside its connection, so every
        # thread shares one and takes turns through the lock.
        self._in_memory = self.db_path == ':memory:'
        self._shared = None
        self._shared_lock = threading.RLock()

        if not self._in_memory:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self._in_memory:
            if self._shared is None:
                self._shared = self._connect()
            return self._shared
        conn = getattr(self._local, 'connection', None)
        if conn is None:
            conn = self._local.connection = self._connect()
        return conn

    @contextmanager
    def get_connection(self):
        """Yield this thread's connection, rolling back if the block fails."""
        with self._shared_lock if self._in_memory else nullcontext():
            conn = self._connection()
            try:
                yield conn
            except sqlite3.Error as e:
                conn.rollback()
                self.logger.error(f"Database operation failed: {e}")
                raise

    def initialize_database(self):
        """Apply SCHEMA; existing tables and indexes are left untouched."""
        with self.get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        self.logger.info(f"Database ready at {self.db_path}")

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Run a SELECT.

        Returns:
            list of dict, or a single dict (None when no row) if ``fetch_all`` is False
        """
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())
            if not fetch_all:
                row = cursor.fetchone()
                return dict(row) if row else None
            return [dict(row) for row in cursor.fetchall()]

    def execute_update(self, query, params=None) -> int:
        """Run a single write statement and commit it; returns the affected row count."""
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())
            conn.commit()
            return cursor.rowcount

    @contextmanager
    def transaction(self):
        """
        Group several statements into one commit. Any exception raised inside
        the block rolls all of them back and is re-raised.
        """
        with self.get_connection() as conn:
            try:
                yield conn
            except Exception:
                conn.rollback()
                self.logger.warning("Transaction rolled back")
                raise
            conn.commit()

    def close_all_connections(self):
        """Close the calling thread's connection, or the shared in-memory one."""
        if self._in_memory:
            with self._shared_lock:
                if self._shared is not None:
                    self._shared.close()
                    self._shared = None
            return
        conn = getattr(self._local, 'connection', None)
        if conn is not None:
            conn.close()
            del self._local.connection
