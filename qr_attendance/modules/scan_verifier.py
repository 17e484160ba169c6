"""
Scan Verifier Module - QR Attendance Verification Engine

Decides whether a scanned attendance token marks the scanning user present.
Checks run in a fixed order and the first failure wins:

    1. decode     -> invalid_token
    2. expiry     -> expired
    3. session    -> session_not_active
    4. duplicate  -> already_marked
    5. geofence   -> location_required / out_of_range
    6. commit     present or late, aggregates recomputed in the same transaction
    7. anomaly    advisory flag and owner alert, never a rejection

Every call leaves exactly one scan attempt row behind for the audit trail.
Rejections come back as a ScanResult; only TransientFailure is raised.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from qr_attendance.modules.database_manager import is_duplicate_violation, to_db_timestamp
from qr_attendance.modules.errors import AttendanceError, NotFound, RejectionReason
from qr_attendance.modules.geofence import Coordinate, distance_meters
from qr_attendance.modules.session_manager import (
    ATTENDANCE_LATE,
    ATTENDANCE_PRESENT,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    AttendanceSession,
)

DECISION_ACCEPTED = 'accepted'
DECISION_REJECTED = 'rejected'


@dataclass
class ScanResult:
    """Outcome of one scan."""
    accepted: bool
    reason: Optional[str] = None
    session_id: Optional[str] = None
    scan_attempt_id: Optional[int] = None
    attendance_status: Optional[str] = None
    is_suspicious: bool = False
    scanned_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.accepted:
            return f"Attendance marked as {self.attendance_status}"
        return RejectionReason.message_for(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.accepted,
            'message': self.message,
            'session_id': self.session_id,
            'scan_attempt_id': self.scan_attempt_id
        }
        if self.accepted:
            result['attendance'] = {
                'status': self.attendance_status,
                'scanned_at': self.scanned_at.isoformat() if self.scanned_at else None,
                'is_suspicious': self.is_suspicious
            }
        else:
            result['error_type'] = self.reason
        if self.details:
            result['details'] = self.details
        return result


class ScanVerifier:
    """
    Orchestrates token, session, duplicate and location checks for a scan
    and commits the attendance mark.
    """

    def __init__(self, database_manager, token_codec, session_manager, device_resolver,
                 anomaly_detector, notification_system,
                 late_threshold_minutes: int = 15,
                 allow_superseded_tokens: bool = True,
                 clock: Callable[[], datetime] = None):
        """
        Initialize the scan verifier.

        Args:
            database_manager: Database manager instance
            token_codec: TokenCodec bound to the signing secret
            session_manager: SessionManager owning session state
            device_resolver: DeviceIdentityResolver
            anomaly_detector: AnomalyDetector
            notification_system: NotificationSystem used for owner alerts
            late_threshold_minutes (int): Minutes after start before a scan counts as late
            allow_superseded_tokens (bool): Accept tokens replaced by a refresh
                until their own expiry
            clock: Callable returning the current timezone-aware datetime
        """
        self.db = database_manager
        self.codec = token_codec
        self.sessions = session_manager
        self.devices = device_resolver
        self.anomalies = anomaly_detector
        self.notifications = notification_system
        self.late_threshold = timedelta(minutes=late_threshold_minutes)
        self.allow_superseded_tokens = allow_superseded_tokens
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    def verify_scan(self, token: str, user_id: str,
                    coordinate: Optional[Coordinate] = None,
                    device_signals: Optional[Mapping[str, Any]] = None,
                    device_fingerprint: Optional[str] = None) -> ScanResult:
        """
        Process a QR code scan for attendance recording.

        Args:
            token (str): Scanned token string
            user_id (str): Authenticated scanning user
            coordinate (Coordinate): Reported location, if the client shared one
            device_signals (Mapping): Passive device signals
            device_fingerprint (str): Fingerprint cached by the client

        Returns:
            ScanResult: Accepted or rejected with a reason

        Raises:
            TransientFailure: Storage failed; the caller may retry
        """
        now = self.clock()
        device_id = self.devices.resolve(device_signals, cached=device_fingerprint)
        attempt = {
            'token': token,
            'user_id': user_id,
            'device_id': device_id,
            'coordinate': coordinate,
            'scanned_at': now
        }

        # 1. Decode
        claims = self.codec.verify(token)
        if claims is None:
            return self._reject(attempt, None, RejectionReason.INVALID_TOKEN)

        # 2. Expiry
        if now.timestamp() > claims.expires_at:
            return self._reject(attempt, claims.session_id, RejectionReason.EXPIRED)

        # 3. Session state
        try:
            session = self.sessions.get_session(claims.session_id)
        except NotFound:
            return self._reject(attempt, None, RejectionReason.SESSION_NOT_ACTIVE)

        if session.status != STATUS_ACTIVE:
            return self._reject(attempt, session.id, RejectionReason.SESSION_NOT_ACTIVE,
                                details={'session_status': session.status})

        if not self.allow_superseded_tokens and claims.expires_at != int(session.expires_at.timestamp()):
            return self._reject(attempt, session.id, RejectionReason.INVALID_TOKEN)

        # 4. Duplicate
        if self._already_marked(session.id, user_id):
            return self._reject(attempt, session.id, RejectionReason.ALREADY_MARKED)

        # 5. Geofence
        if session.geofence is not None:
            if coordinate is None:
                return self._reject(attempt, session.id, RejectionReason.LOCATION_REQUIRED)

            distance = distance_meters(coordinate.lat, coordinate.lng,
                                       session.geofence.center.lat, session.geofence.center.lng)
            if distance > session.geofence.radius_meters:
                return self._reject(attempt, session.id, RejectionReason.OUT_OF_RANGE, details={
                    'distance_meters': round(distance, 1),
                    'radius_meters': session.geofence.radius_meters
                })

        # 6. Commit
        status = self._classify(session, now)
        attempt_id, reason = self._commit(attempt, session, status)
        if reason is not None:
            return self._reject(attempt, session.id, reason)

        self.logger.info(
            f"Attendance recorded: user {user_id}, session {session.id}, status {status}"
        )
        result = ScanResult(
            accepted=True,
            session_id=session.id,
            scan_attempt_id=attempt_id,
            attendance_status=status,
            scanned_at=now
        )

        # 7. Anomaly pass
        result.is_suspicious = self._anomaly_pass(attempt, session, attempt_id)
        return result

    def _classify(self, session: AttendanceSession, scanned_at: datetime) -> str:
        if scanned_at > session.starts_at + self.late_threshold:
            return ATTENDANCE_LATE
        return ATTENDANCE_PRESENT

    def _already_marked(self, session_id: str, user_id: str) -> bool:
        row = self.db.execute_query(
            """SELECT 1 FROM attendance_records WHERE session_id = ? AND user_id = ?
               UNION ALL
               SELECT 1 FROM scan_attempts
               WHERE session_id = ? AND user_id = ? AND decision = ?
               LIMIT 1""",
            (session_id, user_id, session_id, user_id, DECISION_ACCEPTED),
            fetch_all=False
        )
        return row is not None

    def _commit(self, attempt: Dict[str, Any], session: AttendanceSession,
                status: str) -> Tuple[Optional[int], Optional[str]]:
        """
        Insert the accepted attempt, the attendance mark and the new aggregates
        in one transaction.

        Returns:
            (scan attempt id, None) on success, or (None, rejection reason) when
            the session was completed meanwhile or a concurrent scan by the
            same user won the uniqueness constraint
        """
        try:
            with self.db.transaction(immediate=True) as conn:
                stored = conn.execute(
                    "SELECT status FROM attendance_sessions WHERE id = ?",
                    (session.id,)
                ).fetchone()
                if stored is None or stored[0] == STATUS_COMPLETED:
                    return None, RejectionReason.SESSION_NOT_ACTIVE

                attempt_id = self._insert_attempt(conn, attempt, session.id, DECISION_ACCEPTED, None, status)
                conn.execute(
                    """INSERT INTO attendance_records (session_id, user_id, status, scan_attempt_id, marked_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (session.id, attempt['user_id'], status, attempt_id,
                     to_db_timestamp(attempt['scanned_at']))
                )
                self.sessions.record_presence(session.id, status, conn=conn)
        except sqlite3.IntegrityError as e:
            if not is_duplicate_violation(e):
                raise
            self.logger.info(
                f"Concurrent duplicate scan for user {attempt['user_id']} on session {session.id}"
            )
            return None, RejectionReason.ALREADY_MARKED

        self._register_device(attempt)
        return attempt_id, None

    def _reject(self, attempt: Dict[str, Any], session_id: Optional[str], reason: str,
                details: Dict[str, Any] = None) -> ScanResult:
        attempt_id = None
        try:
            with self.db.transaction() as conn:
                attempt_id = self._insert_attempt(conn, attempt, session_id, DECISION_REJECTED, reason, None)
        except AttendanceError as e:
            self.logger.error(f"Could not record rejected scan ({reason}): {e.message}")
        else:
            self._register_device(attempt)

        self.logger.warning(
            f"Scan rejected for user {attempt['user_id']} on session {session_id}: {reason}"
        )
        return ScanResult(
            accepted=False,
            reason=reason,
            session_id=session_id,
            scan_attempt_id=attempt_id,
            scanned_at=attempt['scanned_at'],
            details=details or {}
        )

    def _insert_attempt(self, conn, attempt: Dict[str, Any], session_id: Optional[str],
                        decision: str, reason: Optional[str], status: Optional[str]) -> int:
        coordinate = attempt['coordinate']
        cursor = conn.execute(
            """INSERT INTO scan_attempts
               (session_id, user_id, device_id, token, latitude, longitude, accuracy,
                scanned_at, decision, reason, attendance_status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session_id, attempt['user_id'], attempt['device_id'], attempt['token'],
                coordinate.lat if coordinate else None,
                coordinate.lng if coordinate else None,
                coordinate.accuracy if coordinate else None,
                to_db_timestamp(attempt['scanned_at']), decision, reason, status
            )
        )
        return cursor.lastrowid

    def _register_device(self, attempt: Dict[str, Any]) -> None:
        try:
            self.devices.register(attempt['device_id'], attempt['user_id'], attempt['scanned_at'])
        except AttendanceError as e:
            self.logger.warning(f"Device registry update failed: {e.message}")

    def _anomaly_pass(self, attempt: Dict[str, Any], session: AttendanceSession, attempt_id: int) -> bool:
        device_id = attempt['device_id']
        try:
            if not self.anomalies.is_suspicious(device_id):
                return False

            scan_count = self.anomalies.recent_scan_count(device_id)
            self.db.execute_update(
                "UPDATE scan_attempts SET is_suspicious = 1 WHERE id = ?",
                (attempt_id,)
            )
        except AttendanceError as e:
            self.logger.error(f"Anomaly check failed for scan {attempt_id}: {e.message}")
            return False

        self.notifications.send_suspicious_activity_alert(session.owner_id, {
            'session_id': session.id,
            'user_id': attempt['user_id'],
            'device_id': device_id,
            'scan_attempt_id': attempt_id,
            'scan_count': scan_count
        })
        return True
