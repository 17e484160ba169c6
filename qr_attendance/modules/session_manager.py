"""
Session Manager Module - QR Attendance Verification Engine

This module owns the attendance session lifecycle. It creates sessions,
issues and rotates their QR tokens, keeps the live present/late aggregates
in step with the attendance records, applies faculty corrections and
finalizes sessions by back-filling absences.

States:
    scheduled -> active -> expired     (lazily, by comparing now to expiry)
    scheduled/active/expired -> completed   (explicit owner action)

Status is evaluated on read against the clock; there is no timer. A stored
status only ever moves forward.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from qr_attendance.modules.database_manager import from_db_timestamp, to_db_timestamp
from qr_attendance.modules.errors import Forbidden, InvalidState, NotFound, ValidationError
from qr_attendance.modules.geofence import Coordinate, Geofence
from qr_attendance.modules.token_codec import AttendanceToken, TokenCodec

STATUS_SCHEDULED = 'scheduled'
STATUS_ACTIVE = 'active'
STATUS_EXPIRED = 'expired'
STATUS_COMPLETED = 'completed'

_STATUS_RANK = {
    STATUS_SCHEDULED: 0,
    STATUS_ACTIVE: 1,
    STATUS_EXPIRED: 2,
    STATUS_COMPLETED: 3
}

ATTENDANCE_PRESENT = 'present'
ATTENDANCE_LATE = 'late'
ATTENDANCE_ABSENT = 'absent'
ATTENDANCE_EXCUSED = 'excused'

ATTENDANCE_STATUSES = (ATTENDANCE_PRESENT, ATTENDANCE_LATE, ATTENDANCE_ABSENT, ATTENDANCE_EXCUSED)


@dataclass
class AttendanceSession:
    """Data class for an attendance session."""
    id: str
    owner_id: str
    subject_id: str
    starts_at: datetime
    expires_at: datetime
    ends_at: Optional[datetime]
    token_issued_at: datetime
    geofence: Optional[Geofence]
    enrollment_target: int
    present_count: int
    late_count: int
    attendance_percentage: float
    status: str
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    roster: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        geofence = None
        if self.geofence:
            geofence = {
                'lat': self.geofence.center.lat,
                'lng': self.geofence.center.lng,
                'radius_meters': self.geofence.radius_meters
            }
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'subject_id': self.subject_id,
            'starts_at': self.starts_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'ends_at': self.ends_at.isoformat() if self.ends_at else None,
            'token_issued_at': self.token_issued_at.isoformat(),
            'geofence': geofence,
            'enrollment_target': self.enrollment_target,
            'present_count': self.present_count,
            'late_count': self.late_count,
            'attendance_percentage': self.attendance_percentage,
            'status': self.status,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }


def compute_percentage(present: int, target: int) -> float:
    """present / target as a percentage, 0 when there is no target."""
    if target <= 0:
        return 0.0
    return round(present * 100.0 / target, 2)


def effective_status(stored_status: str, starts_at: datetime, expires_at: datetime, now: datetime) -> str:
    """Status as of now. Never earlier than the stored status."""
    if stored_status == STATUS_COMPLETED:
        return STATUS_COMPLETED
    if now > expires_at:
        computed = STATUS_EXPIRED
    elif now >= starts_at:
        computed = STATUS_ACTIVE
    else:
        computed = STATUS_SCHEDULED

    if _STATUS_RANK[computed] < _STATUS_RANK.get(stored_status, 0):
        return stored_status
    return computed


class SessionManager:
    """
    Attendance session lifecycle management.
    All writes to a session row go through this class.
    """

    def __init__(self, database_manager, token_codec: TokenCodec,
                 token_ttl_minutes: int = 5,
                 default_radius_meters: float = 50.0,
                 clock: Callable[[], datetime] = None):
        """
        Initialize the session manager.

        Args:
            database_manager: Database manager instance
            token_codec (TokenCodec): Codec bound to the signing secret
            token_ttl_minutes (int): Expiry horizon for new and refreshed tokens
            default_radius_meters (float): Radius used for a geofence given without one
            clock: Callable returning the current timezone-aware datetime
        """
        if token_ttl_minutes <= 0:
            raise ValueError("token_ttl_minutes must be positive")

        self.db = database_manager
        self.codec = token_codec
        self.token_ttl = timedelta(minutes=token_ttl_minutes)
        self.default_radius_meters = default_radius_meters
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_session(self, owner_id: str, subject_id: str,
                       starts_at: datetime = None, expires_at: datetime = None,
                       ends_at: datetime = None, geofence: Geofence = None,
                       enrollment_target: int = None,
                       roster: Iterable[str] = None) -> AttendanceSession:
        """
        Create an attendance session.

        Args:
            owner_id (str): Issuing faculty id
            subject_id (str): Class/subject id
            starts_at (datetime): Start of the window, defaults to now
            expires_at (datetime): Token validity horizon, defaults to start + TTL
            ends_at (datetime): Optional scheduled end of the class
            geofence (Geofence): Optional allowed area
            enrollment_target (int): Expected attendees, defaults to the roster size
            roster (Iterable[str]): Optional enrolled user ids

        Returns:
            AttendanceSession: The stored session
        """
        if not owner_id:
            raise ValidationError("owner_id is required")
        if not subject_id:
            raise ValidationError("subject_id is required")

        now = self.clock()
        starts_at = self._aware(starts_at) if starts_at else now
        expires_at = self._aware(expires_at) if expires_at else max(starts_at, now) + self.token_ttl
        # tokens carry whole seconds
        expires_at = expires_at.replace(microsecond=0)
        ends_at = self._aware(ends_at) if ends_at else None

        if expires_at <= starts_at:
            raise ValidationError("Expiry time must be after the start time")
        if ends_at is not None and ends_at <= starts_at:
            raise ValidationError("End time must be after the start time")

        roster_ids = list(dict.fromkeys(str(user_id) for user_id in (roster or []) if user_id))
        if enrollment_target is None:
            enrollment_target = len(roster_ids)
        if isinstance(enrollment_target, bool) or not isinstance(enrollment_target, int) or enrollment_target < 0:
            raise ValidationError("Enrollment target must be a non-negative integer")
        if len(roster_ids) > enrollment_target:
            raise ValidationError("Roster is larger than the enrollment target")

        if geofence is not None:
            if geofence.radius_meters is None:
                geofence = Geofence(center=geofence.center, radius_meters=self.default_radius_meters)
            if geofence.radius_meters <= 0:
                raise ValidationError("Geofence radius must be positive")

        session_id = f"sess_{secrets.token_urlsafe(12)}"
        status = STATUS_ACTIVE if starts_at <= now else STATUS_SCHEDULED
        stamp = to_db_timestamp(now)

        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO attendance_sessions
                   (id, owner_id, subject_id, starts_at, expires_at, ends_at, token_issued_at,
                    geofence_lat, geofence_lng, geofence_radius, enrollment_target,
                    status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session_id, owner_id, subject_id,
                    to_db_timestamp(starts_at), to_db_timestamp(expires_at), to_db_timestamp(ends_at),
                    stamp,
                    geofence.center.lat if geofence else None,
                    geofence.center.lng if geofence else None,
                    geofence.radius_meters if geofence else None,
                    enrollment_target, status, stamp, stamp
                )
            )
            conn.executemany(
                "INSERT INTO session_enrollments (session_id, user_id) VALUES (?, ?)",
                [(session_id, user_id) for user_id in roster_ids]
            )

        self.logger.info(
            f"Attendance session {session_id} created by {owner_id} for {subject_id} "
            f"(status {status}, target {enrollment_target}, geofence {'on' if geofence else 'off'})"
        )
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> AttendanceSession:
        """
        Load a session with its status evaluated against the clock.

        Raises:
            NotFound: No such session
        """
        row = self.db.execute_query(
            "SELECT * FROM attendance_sessions WHERE id = ?",
            (session_id,),
            fetch_all=False
        )
        if not row:
            raise NotFound(f"Attendance session {session_id} not found")

        session = self._row_to_session(row)
        current = effective_status(session.status, session.starts_at, session.expires_at, self.clock())
        if current != session.status:
            # Forward-only: the WHERE clause loses to a concurrent completion
            self.db.execute_update(
                """UPDATE attendance_sessions SET status = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (current, to_db_timestamp(self.clock()), session_id, session.status)
            )
            self.logger.info(f"Session {session_id} moved {session.status} -> {current}")
            session.status = current

        session.roster = self.get_roster(session_id)
        return session

    def get_roster(self, session_id: str) -> List[str]:
        rows = self.db.execute_query(
            "SELECT user_id FROM session_enrollments WHERE session_id = ? ORDER BY user_id",
            (session_id,)
        )
        return [row['user_id'] for row in rows]

    def issue_token(self, session: AttendanceSession) -> AttendanceToken:
        """Re-derive the session's current token. Nothing is stored."""
        return self.codec.issue(session.id, session.expires_at, session.token_issued_at)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def refresh_token(self, session_id: str, issuer_id: str) -> AttendanceToken:
        """
        Rotate the session's token to a new expiry horizon.

        Identity and aggregates are untouched. Tokens minted earlier stay
        cryptographically valid until their own expiry.

        Raises:
            NotFound, Forbidden, InvalidState
        """
        session = self.get_owned_session(session_id, issuer_id)
        if session.status in (STATUS_COMPLETED, STATUS_EXPIRED):
            raise InvalidState(f"Cannot refresh a {session.status} session")

        now = self.clock()
        new_expiry = (max(now, session.starts_at) + self.token_ttl).replace(microsecond=0)

        updated = self.db.execute_update(
            """UPDATE attendance_sessions
               SET expires_at = ?, token_issued_at = ?, updated_at = ?
               WHERE id = ? AND status IN (?, ?)""",
            (
                to_db_timestamp(new_expiry), to_db_timestamp(now), to_db_timestamp(now),
                session_id, STATUS_SCHEDULED, STATUS_ACTIVE
            )
        )
        if not updated:
            raise InvalidState("Session changed state during refresh")

        session.expires_at = new_expiry
        session.token_issued_at = now
        self.logger.info(f"Token refreshed for session {session_id}, new expiry {new_expiry.isoformat()}")
        return self.issue_token(session)

    def record_presence(self, session_id: str, outcome: str = ATTENDANCE_PRESENT, conn=None) -> None:
        """
        Bring the live aggregates in line after an accepted scan.

        Counts are recomputed from attendance records, never incremented in
        memory, so concurrent scans cannot lose an update.

        Args:
            session_id (str): Session that accepted the scan
            outcome (str): 'present' or 'late'
            conn: Open transaction to join, so the mark and the aggregates
                commit together
        """
        if outcome not in (ATTENDANCE_PRESENT, ATTENDANCE_LATE):
            raise ValidationError(f"Unknown presence outcome: {outcome}")

        if conn is not None:
            self._recompute_aggregates(conn, session_id)
        else:
            with self.db.transaction(immediate=True) as own_conn:
                self._recompute_aggregates(own_conn, session_id)

        self.logger.debug(f"Aggregates updated for session {session_id} after {outcome} scan")

    def complete(self, session_id: str, issuer_id: str) -> Dict[str, Any]:
        """
        Finalize a session and back-fill absences.

        Roster users without a mark are recorded absent first; anonymous
        absent rows make up the rest, so exactly
        enrollment_target - (marked users) rows are added, never fewer than zero.

        Returns:
            Dict[str, Any]: Completed session and the number of absences added

        Raises:
            NotFound, Forbidden, InvalidState
        """
        session = self.get_owned_session(session_id, issuer_id)
        if session.status == STATUS_COMPLETED:
            raise InvalidState("Session is already completed")

        now = to_db_timestamp(self.clock())
        with self.db.transaction(immediate=True) as conn:
            updated = conn.execute(
                """UPDATE attendance_sessions
                   SET status = ?, completed_at = ?, updated_at = ?
                   WHERE id = ? AND status != ?""",
                (STATUS_COMPLETED, now, now, session_id, STATUS_COMPLETED)
            ).rowcount
            if not updated:
                raise InvalidState("Session is already completed")

            marked = conn.execute(
                "SELECT COUNT(*) FROM attendance_records WHERE session_id = ?",
                (session_id,)
            ).fetchone()[0]
            missing = max(0, session.enrollment_target - marked)

            unmarked_roster = [row[0] for row in conn.execute(
                """SELECT e.user_id FROM session_enrollments e
                   LEFT JOIN attendance_records r
                     ON r.session_id = e.session_id AND r.user_id = e.user_id
                   WHERE e.session_id = ? AND r.id IS NULL
                   ORDER BY e.user_id""",
                (session_id,)
            ).fetchall()][:missing]

            absentees = unmarked_roster + [None] * (missing - len(unmarked_roster))
            conn.executemany(
                """INSERT INTO attendance_records (session_id, user_id, status, marked_at, notes)
                   VALUES (?, ?, ?, ?, ?)""",
                [(session_id, user_id, ATTENDANCE_ABSENT, now, 'auto: no scan before completion')
                 for user_id in absentees]
            )

            self._recompute_aggregates(conn, session_id)

        self.logger.info(
            f"Session {session_id} completed by {issuer_id}: {len(absentees)} absent records back-filled"
        )
        completed = self.get_session(session_id)
        return {
            'session': completed,
            'absent_backfilled': len(absentees)
        }

    def correct_attendance(self, session_id: str, issuer_id: str, user_id: str,
                           status: str, notes: str = None) -> AttendanceSession:
        """
        Owner's manual correction of one user's mark.

        This is the only path that may lower the live aggregates.
        """
        if status not in ATTENDANCE_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(ATTENDANCE_STATUSES)}")
        if not user_id:
            raise ValidationError("user_id is required")

        session = self.get_owned_session(session_id, issuer_id)
        if session.status == STATUS_COMPLETED:
            raise InvalidState("Cannot correct attendance on a completed session")

        now = to_db_timestamp(self.clock())
        with self.db.transaction(immediate=True) as conn:
            conn.execute(
                """INSERT INTO attendance_records
                   (session_id, user_id, status, marked_at, corrected_by, notes)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id, user_id) DO UPDATE SET
                     status = excluded.status,
                     corrected_by = excluded.corrected_by,
                     notes = excluded.notes""",
                (session_id, user_id, status, now, issuer_id, notes)
            )
            self._recompute_aggregates(conn, session_id)

        self.logger.info(f"Attendance for {user_id} in {session_id} corrected to {status} by {issuer_id}")
        return self.get_session(session_id)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def get_session_attendance(self, session_id: str, issuer_id: str) -> List[Dict[str, Any]]:
        """Attendance records of a session, for its owner."""
        self.get_owned_session(session_id, issuer_id)
        return self.db.execute_query(
            """SELECT id, session_id, user_id, status, scan_attempt_id, marked_at, corrected_by, notes
               FROM attendance_records WHERE session_id = ?
               ORDER BY marked_at, id""",
            (session_id,)
        )

    def get_scan_attempts(self, session_id: str, issuer_id: str) -> List[Dict[str, Any]]:
        """Audit trail of scans against a session, for its owner."""
        self.get_owned_session(session_id, issuer_id)
        rows = self.db.execute_query(
            """SELECT id, user_id, device_id, scanned_at, decision, reason,
                      attendance_status, is_suspicious
               FROM scan_attempts WHERE session_id = ?
               ORDER BY id""",
            (session_id,)
        )
        for row in rows:
            row['is_suspicious'] = bool(row['is_suspicious'])
        return rows

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get_owned_session(self, session_id: str, issuer_id: str) -> AttendanceSession:
        session = self.get_session(session_id)
        if session.owner_id != issuer_id:
            self.logger.warning(f"User {issuer_id} attempted to modify session {session_id} they do not own")
            raise Forbidden("Only the session owner may perform this operation")
        return session

    def _recompute_aggregates(self, conn, session_id: str) -> None:
        counts = conn.execute(
            """SELECT
                 SUM(CASE WHEN status IN (?, ?) THEN 1 ELSE 0 END),
                 SUM(CASE WHEN status = ? THEN 1 ELSE 0 END)
               FROM attendance_records WHERE session_id = ?""",
            (ATTENDANCE_PRESENT, ATTENDANCE_LATE, ATTENDANCE_LATE, session_id)
        ).fetchone()
        present = counts[0] or 0
        late = counts[1] or 0

        target = conn.execute(
            "SELECT enrollment_target FROM attendance_sessions WHERE id = ?",
            (session_id,)
        ).fetchone()
        if target is None:
            raise NotFound(f"Attendance session {session_id} not found")

        conn.execute(
            """UPDATE attendance_sessions
               SET present_count = ?, late_count = ?, attendance_percentage = ?, updated_at = ?
               WHERE id = ?""",
            (present, late, compute_percentage(present, target[0]),
             to_db_timestamp(self.clock()), session_id)
        )

    def _aware(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _row_to_session(self, row: Dict[str, Any]) -> AttendanceSession:
        geofence = None
        if row['geofence_lat'] is not None and row['geofence_lng'] is not None:
            geofence = Geofence(
                center=Coordinate(lat=row['geofence_lat'], lng=row['geofence_lng']),
                radius_meters=row['geofence_radius']
            )

        return AttendanceSession(
            id=row['id'],
            owner_id=row['owner_id'],
            subject_id=row['subject_id'],
            starts_at=from_db_timestamp(row['starts_at']),
            expires_at=from_db_timestamp(row['expires_at']),
            ends_at=from_db_timestamp(row['ends_at']),
            token_issued_at=from_db_timestamp(row['token_issued_at']),
            geofence=geofence,
            enrollment_target=row['enrollment_target'],
            present_count=row['present_count'],
            late_count=row['late_count'],
            attendance_percentage=row['attendance_percentage'],
            status=row['status'],
            completed_at=from_db_timestamp(row['completed_at']),
            created_at=from_db_timestamp(row['created_at']),
            updated_at=from_db_timestamp(row['updated_at'])
        )
