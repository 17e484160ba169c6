from datetime import timedelta

import pytest

from qr_attendance.modules.anomaly_detector import AnomalyDetector
from qr_attendance.modules.database_manager import to_db_timestamp

DEVICE = 'a' * 64
OTHER_DEVICE = 'b' * 64


def _record_scan(db, device_id, scanned_at, decision='accepted', user_id='student-1'):
    db.execute_update(
        """INSERT INTO scan_attempts (session_id, user_id, device_id, scanned_at, decision)
           VALUES (?, ?, ?, ?, ?)""",
        ('sess_test', user_id, device_id, to_db_timestamp(scanned_at), decision)
    )


def test_no_history_is_not_suspicious(anomaly_detector):
    assert anomaly_detector.recent_scan_count(DEVICE) == 0
    assert not anomaly_detector.is_suspicious(DEVICE)


def test_threshold_must_be_exceeded(db, anomaly_detector, clock):
    for offset in range(3):
        _record_scan(db, DEVICE, clock() - timedelta(seconds=offset * 30))
    assert not anomaly_detector.is_suspicious(DEVICE)

    _record_scan(db, DEVICE, clock())
    assert anomaly_detector.recent_scan_count(DEVICE) == 4
    assert anomaly_detector.is_suspicious(DEVICE)


def test_rejected_attempts_count(db, anomaly_detector, clock):
    for index in range(4):
        _record_scan(db, DEVICE, clock(), decision='rejected', user_id=f'student-{index}')

    assert anomaly_detector.is_suspicious(DEVICE)


def test_scans_outside_window_are_ignored(db, anomaly_detector, clock):
    for _ in range(5):
        _record_scan(db, DEVICE, clock() - timedelta(minutes=6))
    _record_scan(db, DEVICE, clock() - timedelta(minutes=4))

    assert anomaly_detector.recent_scan_count(DEVICE) == 1
    assert not anomaly_detector.is_suspicious(DEVICE)


def test_other_devices_do_not_count(db, anomaly_detector, clock):
    for _ in range(5):
        _record_scan(db, OTHER_DEVICE, clock())

    assert not anomaly_detector.is_suspicious(DEVICE)
    assert anomaly_detector.is_suspicious(OTHER_DEVICE)


def test_window_and_threshold_can_be_overridden(db, anomaly_detector, clock):
    _record_scan(db, DEVICE, clock() - timedelta(seconds=90))
    _record_scan(db, DEVICE, clock())

    assert anomaly_detector.recent_scan_count(DEVICE, window_seconds=60) == 1
    assert anomaly_detector.is_suspicious(DEVICE, threshold=1)
    assert not anomaly_detector.is_suspicious(DEVICE, window_seconds=60, threshold=1)


def test_configured_defaults(db, clock):
    strict = AnomalyDetector(db, window_seconds=60, threshold=1, clock=clock)
    _record_scan(db, DEVICE, clock())
    _record_scan(db, DEVICE, clock())

    assert strict.is_suspicious(DEVICE)


def test_empty_device_is_never_suspicious(anomaly_detector):
    assert not anomaly_detector.is_suspicious('')


@pytest.mark.parametrize("kwargs", [{'window_seconds': 0}, {'threshold': -1}])
def test_invalid_settings(db, kwargs):
    with pytest.raises(ValueError):
        AnomalyDetector(db, **kwargs)
