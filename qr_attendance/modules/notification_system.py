"""
Notification System Module - QR Attendance Verification Engine

Emits alerts for session owners. Emission is fire-and-forget: an alert is
stored in the notifications table, which recent reads also serve from, and
any delivery (push, email, realtime channel) is left to whoever reads them.
A failure to emit is logged and reported as False, never raised into the
scan that triggered it.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from qr_attendance.modules.database_manager import to_db_timestamp
from qr_attendance.modules.errors import AttendanceError


@dataclass
class NotificationData:
    """Data structure for notification information."""
    id: str
    type: str
    title: str
    message: str
    severity: str
    recipient: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ''
    is_read: bool = False


class NotificationSystem:
    """Alert sink used by the scan verifier."""

    NOTIFICATION_TYPES = {
        'SUSPICIOUS_ACTIVITY': 'suspicious_activity'
    }

    SEVERITY_LEVELS = {
        'INFO': 'info',
        'WARNING': 'warning',
        'ERROR': 'error',
        'HIGH': 'high'
    }

    def __init__(self, database_manager, clock: Callable[[], datetime] = None):
        self.db = database_manager
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    def send_suspicious_activity_alert(self, owner_id: str, alert: Dict[str, Any]) -> bool:
        """
        Alert a session owner about rapid scanning from one device.

        Args:
            owner_id (str): Session owner to notify
            alert (Dict[str, Any]): session_id, user_id, device_id, scan_count

        Returns:
            bool: True when the alert was emitted
        """
        device_id = alert.get('device_id') or ''
        payload = dict(alert)
        # Only a prefix of the fingerprint leaves the engine
        payload['device_id'] = device_id[:8]

        notification = NotificationData(
            id=f"suspicious_{uuid4().hex}",
            type=self.NOTIFICATION_TYPES['SUSPICIOUS_ACTIVITY'],
            title="Suspicious Attendance Activity",
            message=f"Multiple rapid scans detected from device {device_id[:8]}...",
            severity=self.SEVERITY_LEVELS['HIGH'],
            recipient=owner_id,
            data=payload,
            created_at=self.clock().isoformat()
        )
        return self._emit(notification)

    def _emit(self, notification: NotificationData) -> bool:
        try:
            self._store_notification(notification)
        except AttendanceError as e:
            self.logger.error(f"Failed to store notification {notification.id}: {e.message}")
            return False

        self.logger.info(f"Alert emitted to {notification.recipient}: {notification.title}")
        return True

    def _store_notification(self, notification: NotificationData) -> None:
        self.db.execute_update(
            """INSERT INTO notifications
               (notification_key, user_id, type, title, message, severity, data, is_read, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)""",
            (
                notification.id, notification.recipient, notification.type,
                notification.title, notification.message, notification.severity,
                json.dumps(notification.data), to_db_timestamp(self.clock())
            )
        )

    def get_recent_notifications(self, user_id: str = None, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Recent notifications, newest first.

        Args:
            user_id (str): Only notifications addressed to this user (or broadcast)
            limit (int): Maximum number returned
        """
        if user_id:
            rows = self.db.execute_query(
                """SELECT * FROM notifications
                   WHERE user_id = ? OR user_id IS NULL
                   ORDER BY created_at DESC, id DESC LIMIT ?""",
                (user_id, limit)
            )
        else:
            rows = self.db.execute_query(
                "SELECT * FROM notifications ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,)
            )

        return [
            {
                'id': row['notification_key'],
                'type': row['type'],
                'title': row['title'],
                'message': row['message'],
                'severity': row['severity'],
                'recipient': row['user_id'],
                'data': json.loads(row['data']) if row['data'] else {},
                'is_read': bool(row['is_read']),
                'created_at': row['created_at']
            }
            for row in rows
        ]

    def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        updated = self.db.execute_update(
            "UPDATE notifications SET is_read = 1 WHERE notification_key = ? AND user_id = ?",
            (notification_id, user_id)
        )
        if not updated:
            return False

        self.logger.info(f"Notification {notification_id} marked as read")
        return True
