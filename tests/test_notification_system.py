from qr_attendance.modules.errors import TransientFailure
from qr_attendance.modules.notification_system import NotificationSystem

OWNER = 'faculty-1'
DEVICE = '0123456789abcdef' * 4


def _alert(session_id='sess_test'):
    return {'session_id': session_id, 'user_id': 'student-1', 'device_id': DEVICE, 'scan_count': 4}


def test_alert_is_stored_with_device_prefix(notification_system):
    assert notification_system.send_suspicious_activity_alert(OWNER, _alert())

    alerts = notification_system.get_recent_notifications(OWNER)
    assert len(alerts) == 1
    assert alerts[0]['severity'] == 'high'
    assert alerts[0]['data']['device_id'] == '01234567'
    assert DEVICE not in alerts[0]['message']
    assert alerts[0]['is_read'] is False


def test_read_state_is_shared_across_instances(db, notification_system, clock):
    notification_system.send_suspicious_activity_alert(OWNER, _alert())
    key = notification_system.get_recent_notifications(OWNER)[0]['id']

    other_worker = NotificationSystem(db, clock=clock)
    assert other_worker.mark_notification_read(key, OWNER)

    assert notification_system.get_recent_notifications(OWNER)[0]['is_read'] is True


def test_only_recipient_can_mark_read(notification_system):
    notification_system.send_suspicious_activity_alert(OWNER, _alert())
    key = notification_system.get_recent_notifications(OWNER)[0]['id']

    assert not notification_system.mark_notification_read(key, 'student-1')
    assert not notification_system.mark_notification_read('suspicious_missing', OWNER)
    assert notification_system.get_recent_notifications(OWNER)[0]['is_read'] is False


def test_recent_notifications_are_newest_first_and_limited(notification_system, clock):
    for index in range(3):
        notification_system.send_suspicious_activity_alert(OWNER, _alert(f'sess_{index}'))
        clock.advance(seconds=1)

    alerts = notification_system.get_recent_notifications(OWNER, limit=2)

    assert [a['data']['session_id'] for a in alerts] == ['sess_2', 'sess_1']


def test_storage_failure_is_reported_not_raised(notification_system, monkeypatch):
    def unavailable(*args, **kwargs):
        raise TransientFailure("Database operation failed, please retry")

    monkeypatch.setattr(notification_system.db, 'execute_update', unavailable)

    assert notification_system.send_suspicious_activity_alert(OWNER, _alert()) is False
