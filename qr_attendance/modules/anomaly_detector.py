"""
Anomaly Detector Module - QR Attendance Verification Engine

Flags devices that scan unusually often. Counts every recorded scan attempt
(accepted or rejected) from a device inside a trailing window; the device is
suspicious once the count exceeds the threshold. The flag is advisory only.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from qr_attendance.modules.database_manager import to_db_timestamp

DEFAULT_WINDOW_SECONDS = 300
DEFAULT_THRESHOLD = 3


class AnomalyDetector:
    """Rapid-scan detector over the scan_attempts audit trail."""

    def __init__(self, database_manager, window_seconds: int = DEFAULT_WINDOW_SECONDS,
                 threshold: int = DEFAULT_THRESHOLD, clock: Callable[[], datetime] = None):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if threshold < 0:
            raise ValueError("threshold must not be negative")

        self.db = database_manager
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    def recent_scan_count(self, device_id: str, window_seconds: int = None) -> int:
        """Number of scan attempts from the device within the trailing window."""
        window = window_seconds if window_seconds is not None else self.window_seconds
        since = self.clock() - timedelta(seconds=window)
        return int(self.db.execute_scalar(
            """SELECT COUNT(*) FROM scan_attempts
               WHERE device_id = ? AND scanned_at >= ?""",
            (device_id, to_db_timestamp(since))
        ))

    def is_suspicious(self, device_id: str, window_seconds: int = None, threshold: int = None) -> bool:
        """
        Args:
            device_id (str): Device fingerprint
            window_seconds (int): Trailing window, defaults to the configured window
            threshold (int): Count that must be exceeded, defaults to the configured threshold

        Returns:
            bool: True when the device scanned more than threshold times in the window
        """
        if not device_id:
            return False

        limit = threshold if threshold is not None else self.threshold
        count = self.recent_scan_count(device_id, window_seconds)
        if count > limit:
            self.logger.warning(
                f"Rapid scanning from device {device_id[:8]}: {count} scans (threshold {limit})"
            )
            return True
        return False
