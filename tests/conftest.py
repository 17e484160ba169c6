import threading
from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from qr_attendance.modules.anomaly_detector import AnomalyDetector
from qr_attendance.modules.database_manager import DatabaseManager
from qr_attendance.modules.device_identity import DeviceIdentityResolver
from qr_attendance.modules.notification_system import NotificationSystem
from qr_attendance.modules.scan_verifier import ScanVerifier
from qr_attendance.modules.session_manager import SessionManager
from qr_attendance.modules.token_codec import TokenCodec

TEST_SECRET = "test-token-secret"
START = datetime(2025, 9, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by every component under test."""

    def __init__(self, start=START):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def db(tmp_path):
    # File-backed: ':memory:' would give every thread its own database
    manager = DatabaseManager(tmp_path / "attendance_test.db", timeout=10.0)
    yield manager
    manager.close_all_connections()


@pytest.fixture()
def codec():
    return TokenCodec(TEST_SECRET)


@pytest.fixture()
def session_manager(db, codec, clock):
    return SessionManager(db, codec, token_ttl_minutes=5, default_radius_meters=50.0, clock=clock)


@pytest.fixture()
def device_resolver(db, clock):
    return DeviceIdentityResolver(db, clock=clock)


@pytest.fixture()
def anomaly_detector(db, clock):
    return AnomalyDetector(db, window_seconds=300, threshold=3, clock=clock)


@pytest.fixture()
def notification_system(db, clock):
    return NotificationSystem(db, clock=clock)


@pytest.fixture()
def make_verifier(db, codec, session_manager, device_resolver, anomaly_detector,
                  notification_system, clock):
    def _make(**kwargs):
        return ScanVerifier(
            db, codec, session_manager, device_resolver, anomaly_detector,
            notification_system, clock=clock, **kwargs
        )
    return _make


@pytest.fixture()
def verifier(make_verifier):
    return make_verifier()


@pytest.fixture()
def app(tmp_path, clock):
    application = create_app(
        'testing',
        clock=clock,
        DATABASE_PATH=str(tmp_path / "app_test.db")
    )
    yield application
    application.extensions['qr_attendance']['db_manager'].close_all_connections()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login_as(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
    return _login
