from datetime import timedelta

import pytest

from qr_attendance.modules.database_manager import to_db_timestamp
from qr_attendance.modules.errors import Forbidden, InvalidState, NotFound, ValidationError
from qr_attendance.modules.geofence import Coordinate, Geofence
from qr_attendance.modules.session_manager import compute_percentage, effective_status

OWNER = 'faculty-1'


def _mark(db, session_manager, session_id, user_id, status='present'):
    db.execute_update(
        """INSERT INTO attendance_records (session_id, user_id, status, marked_at)
           VALUES (?, ?, ?, ?)""",
        (session_id, user_id, status, to_db_timestamp(session_manager.clock()))
    )
    session_manager.record_presence(session_id, status)


def _records(db, session_id):
    return db.execute_query(
        "SELECT user_id, status FROM attendance_records WHERE session_id = ? ORDER BY id",
        (session_id,)
    )


def test_create_session_starting_now_is_active(session_manager, codec, clock):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=30)

    assert session.status == 'active'
    assert session.id.startswith('sess_')
    assert session.starts_at == clock()
    assert session.expires_at == clock() + timedelta(minutes=5)
    assert session.present_count == 0
    assert session.attendance_percentage == 0

    token = session_manager.issue_token(session)
    claims = codec.verify(token.value)
    assert claims.session_id == session.id
    assert claims.expires_at == int(session.expires_at.timestamp())


def test_future_session_is_scheduled_then_active_then_expired(session_manager, clock):
    starts_at = clock() + timedelta(minutes=10)
    session = session_manager.create_session(OWNER, 'CS101', starts_at=starts_at, enrollment_target=10)

    assert session.status == 'scheduled'
    assert session.expires_at == starts_at + timedelta(minutes=5)

    clock.advance(minutes=10)
    assert session_manager.get_session(session.id).status == 'active'

    clock.advance(minutes=5, seconds=1)
    assert session_manager.get_session(session.id).status == 'expired'


def test_expired_status_is_persisted(db, session_manager, clock):
    session = session_manager.create_session(OWNER, 'CS101')
    clock.advance(minutes=6)
    session_manager.get_session(session.id)

    row = db.execute_query("SELECT status FROM attendance_sessions WHERE id = ?", (session.id,), fetch_all=False)
    assert row['status'] == 'expired'


def test_effective_status_never_moves_backwards(clock):
    now = clock()
    later = now + timedelta(minutes=5)

    assert effective_status('expired', now, later, now) == 'expired'
    assert effective_status('completed', now, later, now) == 'completed'
    assert effective_status('scheduled', now, later, now) == 'active'


@pytest.mark.parametrize("kwargs", [
    {'owner_id': '', 'subject_id': 'CS101'},
    {'owner_id': OWNER, 'subject_id': ''},
    {'owner_id': OWNER, 'subject_id': 'CS101', 'enrollment_target': -1},
    {'owner_id': OWNER, 'subject_id': 'CS101', 'enrollment_target': True},
    {'owner_id': OWNER, 'subject_id': 'CS101', 'enrollment_target': '30'},
    {'owner_id': OWNER, 'subject_id': 'CS101', 'enrollment_target': 1, 'roster': ['a', 'b']},
])
def test_create_session_validation(session_manager, kwargs):
    with pytest.raises(ValidationError):
        session_manager.create_session(**kwargs)


def test_expiry_must_follow_start(session_manager, clock):
    with pytest.raises(ValidationError):
        session_manager.create_session(OWNER, 'CS101', starts_at=clock(), expires_at=clock())
    with pytest.raises(ValidationError):
        session_manager.create_session(
            OWNER, 'CS101', starts_at=clock(), expires_at=clock() - timedelta(minutes=1)
        )


def test_end_must_follow_start(session_manager, clock):
    with pytest.raises(ValidationError):
        session_manager.create_session(OWNER, 'CS101', ends_at=clock() - timedelta(hours=1))


def test_roster_sets_default_target(session_manager):
    session = session_manager.create_session(OWNER, 'CS101', roster=['bob', 'alice', 'bob'])

    assert session.enrollment_target == 2
    assert session.roster == ['alice', 'bob']


def test_geofence_defaults_radius(session_manager):
    session = session_manager.create_session(
        OWNER, 'CS101', geofence=Geofence(center=Coordinate(40.0, -74.0), radius_meters=None)
    )

    assert session.geofence.radius_meters == 50.0
    assert session.geofence.center == Coordinate(40.0, -74.0)


def test_geofence_radius_must_be_positive(session_manager):
    with pytest.raises(ValidationError):
        session_manager.create_session(
            OWNER, 'CS101', geofence=Geofence(center=Coordinate(40.0, -74.0), radius_meters=0)
        )


def test_unknown_session(session_manager):
    with pytest.raises(NotFound):
        session_manager.get_session('sess_missing')
    with pytest.raises(NotFound):
        session_manager.refresh_token('sess_missing', OWNER)
    with pytest.raises(NotFound):
        session_manager.complete('sess_missing', OWNER)


def test_refresh_rotates_token_without_touching_identity(db, session_manager, codec, clock):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=10)
    old_token = session_manager.issue_token(session)
    _mark(db, session_manager, session.id, 'student-1')

    clock.advance(minutes=2)
    new_token = session_manager.refresh_token(session.id, OWNER)
    refreshed = session_manager.get_session(session.id)

    assert new_token.value != old_token.value
    assert new_token.expires_at == int((clock() + timedelta(minutes=5)).timestamp())
    assert refreshed.id == session.id
    assert refreshed.present_count == 1
    assert refreshed.token_issued_at == clock()
    # the previous token stays cryptographically valid
    assert codec.verify(old_token.value).session_id == session.id


def test_refresh_of_scheduled_session_counts_from_start(session_manager, clock):
    starts_at = clock() + timedelta(hours=1)
    session = session_manager.create_session(OWNER, 'CS101', starts_at=starts_at)

    token = session_manager.refresh_token(session.id, OWNER)

    assert token.expires_at == int((starts_at + timedelta(minutes=5)).timestamp())


def test_refresh_requires_owner(session_manager):
    session = session_manager.create_session(OWNER, 'CS101')

    with pytest.raises(Forbidden):
        session_manager.refresh_token(session.id, 'faculty-2')


def test_refresh_rejected_after_expiry_or_completion(session_manager, clock):
    expired = session_manager.create_session(OWNER, 'CS101')
    completed = session_manager.create_session(OWNER, 'CS102')
    session_manager.complete(completed.id, OWNER)
    clock.advance(minutes=6)

    with pytest.raises(InvalidState):
        session_manager.refresh_token(expired.id, OWNER)
    with pytest.raises(InvalidState):
        session_manager.refresh_token(completed.id, OWNER)


def test_record_presence_recomputes_from_records(db, session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=3)
    _mark(db, session_manager, session.id, 'student-1')
    _mark(db, session_manager, session.id, 'student-2', status='late')

    current = session_manager.get_session(session.id)
    assert current.present_count == 2
    assert current.late_count == 1
    assert current.attendance_percentage == pytest.approx(66.67)


def test_record_presence_rejects_unknown_outcome(session_manager):
    session = session_manager.create_session(OWNER, 'CS101')

    with pytest.raises(ValidationError):
        session_manager.record_presence(session.id, 'absent')


@pytest.mark.parametrize("present,target,expected", [
    (0, 0, 0.0),
    (5, 0, 0.0),
    (1, 50, 2.0),
    (1, 3, 33.33),
    (50, 50, 100.0),
])
def test_compute_percentage(present, target, expected):
    assert compute_percentage(present, target) == expected


def test_complete_backfills_missing_attendees(db, session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=5)
    _mark(db, session_manager, session.id, 'student-1')
    _mark(db, session_manager, session.id, 'student-2', status='late')

    summary = session_manager.complete(session.id, OWNER)

    assert summary['absent_backfilled'] == 3
    assert summary['session'].status == 'completed'
    assert summary['session'].completed_at is not None
    assert summary['session'].present_count == 2
    statuses = [row['status'] for row in _records(db, session.id)]
    assert statuses.count('absent') == 3
    assert len(statuses) == 5


def test_complete_names_unmarked_roster_first(db, session_manager):
    session = session_manager.create_session(
        OWNER, 'CS101', enrollment_target=5, roster=['alice', 'bob', 'carol']
    )
    _mark(db, session_manager, session.id, 'alice')

    summary = session_manager.complete(session.id, OWNER)

    assert summary['absent_backfilled'] == 4
    absent = [row['user_id'] for row in _records(db, session.id) if row['status'] == 'absent']
    assert absent == ['bob', 'carol', None, None]


def test_complete_never_backfills_below_zero(db, session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=1)
    _mark(db, session_manager, session.id, 'student-1')
    _mark(db, session_manager, session.id, 'student-2')

    assert session_manager.complete(session.id, OWNER)['absent_backfilled'] == 0


def test_complete_with_zero_target(session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=0)

    summary = session_manager.complete(session.id, OWNER)

    assert summary['absent_backfilled'] == 0
    assert summary['session'].attendance_percentage == 0


def test_complete_allowed_after_expiry(session_manager, clock):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=2)
    clock.advance(hours=1)

    summary = session_manager.complete(session.id, OWNER)

    assert summary['session'].status == 'completed'
    assert summary['absent_backfilled'] == 2


def test_complete_requires_owner(session_manager):
    session = session_manager.create_session(OWNER, 'CS101')

    with pytest.raises(Forbidden):
        session_manager.complete(session.id, 'faculty-2')


def test_complete_twice_is_invalid_state(db, session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=3)
    session_manager.complete(session.id, OWNER)

    with pytest.raises(InvalidState):
        session_manager.complete(session.id, OWNER)
    assert len(_records(db, session.id)) == 3


def test_completed_session_stays_completed(session_manager, clock):
    session = session_manager.create_session(OWNER, 'CS101')
    session_manager.complete(session.id, OWNER)
    clock.advance(hours=2)

    assert session_manager.get_session(session.id).status == 'completed'


def test_correction_can_lower_aggregates(db, session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=4)
    _mark(db, session_manager, session.id, 'student-1')

    corrected = session_manager.correct_attendance(
        session.id, OWNER, 'student-1', 'absent', notes='left early'
    )

    assert corrected.present_count == 0
    assert corrected.attendance_percentage == 0
    rows = session_manager.get_session_attendance(session.id, OWNER)
    assert rows[0]['status'] == 'absent'
    assert rows[0]['corrected_by'] == OWNER
    assert rows[0]['notes'] == 'left early'


def test_correction_adds_missing_record(session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=4)

    corrected = session_manager.correct_attendance(session.id, OWNER, 'student-9', 'late')

    assert corrected.present_count == 1
    assert corrected.late_count == 1
    assert corrected.attendance_percentage == 25.0


def test_correction_rules(session_manager):
    session = session_manager.create_session(OWNER, 'CS101', enrollment_target=4)

    with pytest.raises(ValidationError):
        session_manager.correct_attendance(session.id, OWNER, 'student-1', 'teleported')
    with pytest.raises(ValidationError):
        session_manager.correct_attendance(session.id, OWNER, '', 'present')
    with pytest.raises(Forbidden):
        session_manager.correct_attendance(session.id, 'faculty-2', 'student-1', 'present')

    session_manager.complete(session.id, OWNER)
    with pytest.raises(InvalidState):
        session_manager.correct_attendance(session.id, OWNER, 'student-1', 'present')


def test_listings_are_owner_only(session_manager):
    session = session_manager.create_session(OWNER, 'CS101')

    with pytest.raises(Forbidden):
        session_manager.get_session_attendance(session.id, 'student-1')
    with pytest.raises(Forbidden):
        session_manager.get_scan_attempts(session.id, 'student-1')
