"""
Device Identity Module - QR Attendance Verification Engine

Derives a stable pseudo-identifier for the scanning browser from passive
signals the client reports (canvas and WebGL output, screen metrics,
timezone, locale, platform, fonts, hardware hints). The result is a
heuristic: every signal can be spoofed, so the fingerprint is only used to
correlate scans for anomaly detection and never to allow or deny a scan.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from qr_attendance.modules.database_manager import from_db_timestamp, to_db_timestamp

SIGNAL_KEYS = (
    'canvas',
    'webgl',
    'audio',
    'screen',
    'timezone',
    'language',
    'platform',
    'fonts',
    'hardware',
)

_FINGERPRINT_RE = re.compile(r'^[0-9a-f]{64}$')


@dataclass
class DeviceIdentity:
    """A fingerprint seen by the engine and the users who scanned with it."""
    fingerprint: str
    first_seen_at: datetime
    last_seen_at: datetime
    user_ids: List[str] = field(default_factory=list)


def _normalize(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        text = '|'.join(f"{k}={value[k]}" for k in sorted(value))
    elif isinstance(value, (list, tuple)):
        text = ','.join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    return text or None


def signals_from_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Signals that can be read off an HTTP request when the client sends none."""
    signals = {}
    user_agent = headers.get('User-Agent')
    language = headers.get('Accept-Language')
    if user_agent:
        signals['platform'] = user_agent
    if language:
        signals['language'] = language.split(',')[0].strip()
    return signals


class DeviceIdentityResolver:
    """
    Resolves fingerprints and keeps the device registry used for anomaly
    correlation.
    """

    def __init__(self, database_manager, clock: Callable[[], datetime] = None):
        self.db = database_manager
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def is_fingerprint(value: Any) -> bool:
        return isinstance(value, str) and bool(_FINGERPRINT_RE.match(value))

    def compute(self, signals: Optional[Mapping[str, Any]]) -> str:
        """
        Hash the passive signals into a fingerprint.

        A signal that is missing or empty is replaced by a 'no-<name>' marker
        so an environment that hides some signals still gets a fingerprint.
        """
        signals = signals or {}
        parts = []
        for key in SIGNAL_KEYS:
            value = _normalize(signals.get(key))
            parts.append(value if value is not None else f"no-{key}")

        combined = '|'.join(parts)
        return hashlib.sha256(combined.encode('utf-8')).hexdigest()

    def resolve(self, signals: Optional[Mapping[str, Any]] = None, cached: Optional[str] = None) -> str:
        """
        Return the client's cached fingerprint when it is well formed,
        otherwise regenerate it from the signals.
        """
        if cached is not None:
            candidate = cached.strip().lower()
            if self.is_fingerprint(candidate):
                return candidate
            self.logger.debug("Ignoring malformed cached fingerprint")
        return self.compute(signals)

    def register(self, fingerprint: str, user_id: str, seen_at: datetime = None) -> None:
        """Record that a user scanned with this device."""
        seen = to_db_timestamp(seen_at or self.clock())
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO device_identities (fingerprint, first_seen_at, last_seen_at)
                   VALUES (?, ?, ?)""",
                (fingerprint, seen, seen)
            )
            conn.execute(
                """UPDATE device_identities SET last_seen_at = ?
                   WHERE fingerprint = ? AND last_seen_at < ?""",
                (seen, fingerprint, seen)
            )
            conn.execute(
                """INSERT OR IGNORE INTO device_users (fingerprint, user_id, first_seen_at)
                   VALUES (?, ?, ?)""",
                (fingerprint, user_id, seen)
            )

    def get_device(self, fingerprint: str) -> Optional[DeviceIdentity]:
        row = self.db.execute_query(
            "SELECT * FROM device_identities WHERE fingerprint = ?",
            (fingerprint,),
            fetch_all=False
        )
        if not row:
            return None

        users = self.db.execute_query(
            "SELECT user_id FROM device_users WHERE fingerprint = ? ORDER BY first_seen_at, user_id",
            (fingerprint,)
        )
        return DeviceIdentity(
            fingerprint=row['fingerprint'],
            first_seen_at=from_db_timestamp(row['first_seen_at']),
            last_seen_at=from_db_timestamp(row['last_seen_at']),
            user_ids=[u['user_id'] for u in users]
        )
