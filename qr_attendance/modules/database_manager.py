"""
Database Manager Module - QR Attendance Verification Engine

This module handles all database operations for the attendance engine.
It owns the SQLite schema for attendance sessions, scan attempts, attendance
records, device identities and notifications, and hands out thread-local
connections so concurrent scans never share a cursor.

Features:
- SQLite connection management (one connection per thread)
- Idempotent schema creation
- Uniqueness constraints that make duplicate accepted scans impossible
- Transaction support with automatic rollback
- Translation of storage failures into TransientFailure
"""

import sqlite3
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from qr_attendance.modules.errors import TransientFailure

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S.%f'


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so timestamps compare correctly as strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def is_duplicate_violation(error: sqlite3.IntegrityError) -> bool:
    """True for a UNIQUE violation on a (session_id, user_id) pair."""
    message = str(error)
    return 'UNIQUE constraint failed' in message and 'session_id' in message and 'user_id' in message


class DatabaseManager:
    """
    Database access for the attendance engine.
    Handles connection management, schema creation and query execution with
    rollback on error.
    """

    def __init__(self, db_path: Union[str, os.PathLike], timeout: float = 30.0):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file, or ':memory:'
            timeout (float): Seconds to wait on a locked database
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        directory = os.path.dirname(self.db_path)
        if self.db_path != ':memory:' and directory:
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    def _connect(self) -> sqlite3.Connection:
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=self.timeout
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ':memory:':
                connection.execute("PRAGMA journal_mode = WAL")
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return connection

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object
        """
        try:
            connection = self._connect()
        except sqlite3.Error as e:
            self.logger.error(f"Database connection failed: {str(e)}")
            raise TransientFailure("Database is unavailable") from e

        try:
            yield connection
        except sqlite3.IntegrityError:
            connection.rollback()
            raise
        except sqlite3.Error as e:
            connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise TransientFailure("Database operation failed, please retry") from e
        except Exception:
            connection.rollback()
            raise

    def initialize_database(self):
        """
        Create all tables and indexes. Safe to call repeatedly.
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS attendance_sessions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    starts_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    ends_at TEXT,
                    token_issued_at TEXT NOT NULL,
                    geofence_lat REAL,
                    geofence_lng REAL,
                    geofence_radius REAL,
                    enrollment_target INTEGER NOT NULL DEFAULT 0,
                    present_count INTEGER NOT NULL DEFAULT 0,
                    late_count INTEGER NOT NULL DEFAULT 0,
                    attendance_percentage REAL NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (expires_at > starts_at),
                    CHECK (enrollment_target >= 0)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS session_enrollments (
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    PRIMARY KEY (session_id, user_id),
                    FOREIGN KEY (session_id) REFERENCES attendance_sessions(id)
                )
            """)

            # Audit trail: one row per scan, accepted or not
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS scan_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    user_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    token TEXT,
                    latitude REAL,
                    longitude REAL,
                    accuracy REAL,
                    scanned_at TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    reason TEXT,
                    attendance_status TEXT,
                    is_suspicious INTEGER NOT NULL DEFAULT 0
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS attendance_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    user_id TEXT,
                    status TEXT NOT NULL,
                    scan_attempt_id INTEGER,
                    marked_at TEXT NOT NULL,
                    corrected_by TEXT,
                    notes TEXT,
                    FOREIGN KEY (session_id) REFERENCES attendance_sessions(id),
                    FOREIGN KEY (scan_attempt_id) REFERENCES scan_attempts(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS device_identities (
                    fingerprint TEXT PRIMARY KEY,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS device_users (
                    fingerprint TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    first_seen_at TEXT NOT NULL,
                    PRIMARY KEY (fingerprint, user_id),
                    FOREIGN KEY (fingerprint) REFERENCES device_identities(fingerprint)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    notification_key TEXT UNIQUE NOT NULL,
                    user_id TEXT,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    severity TEXT NOT NULL DEFAULT 'info',
                    data TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            # At most one accepted scan and one attendance mark per (session, user)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_scan_attempts_accepted
                ON scan_attempts(session_id, user_id) WHERE decision = 'accepted'
            """)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_attendance_records_user
                ON attendance_records(session_id, user_id)
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_scan_attempts_device ON scan_attempts(device_id, scanned_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_scan_attempts_session ON scan_attempts(session_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_records_session ON attendance_records(session_id, status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_owner ON attendance_sessions(owner_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)")

            conn.commit()

        self.logger.info("Database initialized successfully")

    def execute_query(self, query: str, params: tuple = None,
                      fetch_all: bool = True) -> Union[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())

            if fetch_all:
                return [dict(row) for row in cursor.fetchall()]

            result = cursor.fetchone()
            return dict(result) if result else None

    def execute_scalar(self, query: str, params: tuple = None, default: Any = 0) -> Any:
        """Execute a query returning a single value."""
        with self.get_connection() as conn:
            row = conn.execute(query, params or ()).fetchone()
            if row is None or row[0] is None:
                return default
            return row[0]

    def execute_update(self, query: str, params: tuple = None) -> int:
        """
        Execute an INSERT, UPDATE, or DELETE query and commit.

        Returns:
            int: Last inserted row ID for INSERT, affected rows otherwise
        """
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())
            conn.commit()

            if query.strip().upper().startswith('INSERT'):
                return cursor.lastrowid
            return cursor.rowcount

    @contextmanager
    def transaction(self, immediate: bool = False):
        """
        Context manager for database transactions with automatic rollback on error.

        Args:
            immediate (bool): Take the write lock up front so reads inside the
                transaction cannot go stale before the writes land

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            if immediate and not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.debug(f"Transaction rolled back: {str(e)}")
                raise

    def close_all_connections(self):
        """Close every connection opened by any thread."""
        with self._connections_lock:
            for connection in self._connections:
                try:
                    connection.close()
                except sqlite3.Error as e:
                    self.logger.error(f"Error closing connection: {str(e)}")
            self._connections.clear()
        self._local = threading.local()
