import threading

import pytest

from qrattend.modules.activity_log import ActivityLog
from qrattend.modules.errors import InvalidTokenError, NotFoundError
from qrattend.modules.session_registry import SessionRegistry


def test_open_session_creates_live_session(registry, configuration, teacher, configurations):
    opened = registry.open_session(configuration['id'], teacher.id)

    assert opened['reused'] is False
    assert opened['remaining_seconds'] == 90
    assert opened['session']['is_active'] is True
    assert 'token' not in opened['session']
    assert opened['configuration']['course'] == 'Data Structures'

    updated = configurations.get_configuration(configuration['id'])
    assert updated['total_sessions'] == 1
    assert updated['last_used_at'] is not None


def test_open_session_is_idempotent_while_live(registry, configuration, teacher, clock):
    first = registry.open_session(configuration['id'], teacher.id)
    clock.advance(seconds=30)
    second = registry.open_session(configuration['id'], teacher.id)

    assert second['reused'] is True
    assert second['session']['id'] == first['session']['id']
    assert second['token'] == first['token']
    assert second['remaining_seconds'] == 60


def test_expired_session_is_replaced(registry, configuration, teacher, clock, db):
    first = registry.open_session(configuration['id'], teacher.id)
    clock.advance(seconds=90)
    second = registry.open_session(configuration['id'], teacher.id)

    assert second['reused'] is False
    assert second['session']['id'] != first['session']['id']

    active = db.execute_query(
        "SELECT id FROM sessions WHERE configuration_id = ? AND is_active = 1",
        (configuration['id'],)
    )
    assert [row['id'] for row in active] == [second['session']['id']]


def test_concurrent_opens_yield_one_session(db, codec, configurations, activity_log, clock,
                                            configuration, teacher):
    results, errors = [], []
    barrier = threading.Barrier(6)

    def worker():
        registry = SessionRegistry(db, codec, configurations, activity_log, clock)
        barrier.wait()
        try:
            results.append(registry.open_session(configuration['id'], teacher.id))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not [e for e in errors if not getattr(e, 'status_code', None) == 409]
    assert len({r['session']['id'] for r in results}) == 1
    count = db.execute_query(
        "SELECT COUNT(*) AS n FROM sessions WHERE configuration_id = ?",
        (configuration['id'],), fetch_all=False
    )['n']
    assert count == 1


def test_open_session_requires_ownership(registry, configuration, other_teacher):
    with pytest.raises(NotFoundError):
        registry.open_session(configuration['id'], other_teacher.id)


def test_open_session_on_deactivated_configuration(registry, configuration, teacher, configurations):
    configurations.deactivate_configuration(configuration['id'], teacher.id)
    with pytest.raises(NotFoundError):
        registry.open_session(configuration['id'], teacher.id)


def test_resolve_returns_session_with_configuration(registry, configuration, teacher):
    opened = registry.open_session(configuration['id'], teacher.id)

    session = registry.resolve(opened['token'])

    assert session['id'] == opened['session']['id']
    assert session['configuration']['department'] == 'Computer Science'
    assert session['configuration']['section'] == 'A'


def test_resolve_rejects_garbage_and_expired(registry, configuration, teacher, clock):
    opened = registry.open_session(configuration['id'], teacher.id)

    with pytest.raises(InvalidTokenError):
        registry.resolve('garbage')

    clock.advance(seconds=91)
    with pytest.raises(InvalidTokenError):
        registry.resolve(opened['token'])


def test_closed_session_no_longer_resolves(registry, configuration, teacher):
    opened = registry.open_session(configuration['id'], teacher.id)
    registry.close_session(opened['session']['id'], teacher.id)

    with pytest.raises(NotFoundError):
        registry.resolve(opened['token'])


def test_close_then_open_creates_new_session(registry, configuration, teacher):
    first = registry.open_session(configuration['id'], teacher.id)
    registry.close_session(first['session']['id'], teacher.id)

    second = registry.open_session(configuration['id'], teacher.id)
    assert second['reused'] is False
    assert second['session']['id'] != first['session']['id']


def test_close_session_requires_ownership(registry, configuration, teacher, other_teacher):
    opened = registry.open_session(configuration['id'], teacher.id)
    with pytest.raises(NotFoundError):
        registry.close_session(opened['session']['id'], other_teacher.id)


def test_session_events_are_logged(registry, configuration, teacher, activity_log):
    opened = registry.open_session(configuration['id'], teacher.id)
    registry.open_session(configuration['id'], teacher.id)
    registry.close_session(opened['session']['id'], teacher.id)

    generated = activity_log.get_events(user_id=teacher.id, action=ActivityLog.ACTION_QR_GENERATED)
    closed = activity_log.get_events(user_id=teacher.id, action=ActivityLog.ACTION_SESSION_CLOSED)
    assert len(generated) == 1
    assert generated[0]['details']['session_id'] == opened['session']['id']
    assert len(closed) == 1


def test_session_stats(registry, gate, configuration, teacher, make_student, device_for, clock):
    opened = registry.open_session(configuration['id'], teacher.id)
    for n in range(3):
        gate.admit(opened['token'], make_student(), request=device_for(n + 1))
        clock.advance(seconds=5)

    stats = registry.get_session_stats(opened['session']['id'], owner_id=teacher.id)

    assert stats['attendance_count'] == 3
    assert stats['unique_attendees'] == 3
    assert stats['total_scans'] == 3
    assert stats['is_active'] is True
    assert stats['remaining_seconds'] == 75
    assert [a['student_name'] for a in stats['recent_attendees']] == ['Student 3', 'Student 2', 'Student 1']


def test_session_stats_after_expiry(registry, configuration, teacher, other_teacher, clock):
    opened = registry.open_session(configuration['id'], teacher.id)
    clock.advance(minutes=5)

    stats = registry.get_session_stats(opened['session']['id'])
    assert stats['is_active'] is False
    assert stats['remaining_seconds'] == 0

    with pytest.raises(NotFoundError):
        registry.get_session_stats(opened['session']['id'], owner_id=other_teacher.id)


def test_purge_keeps_attendance(registry, gate, configuration, teacher, student, device, clock, db):
    opened = registry.open_session(configuration['id'], teacher.id)
    assert gate.admit(opened['token'], student, request=device).accepted

    clock.advance(minutes=30)
    assert registry.purge_expired_sessions(retention_minutes=60) == 0

    clock.advance(minutes=32)
    assert registry.purge_expired_sessions(retention_minutes=60) == 1

    remaining = db.execute_query("SELECT COUNT(*) AS n FROM attendance", fetch_all=False)['n']
    assert remaining == 1


def test_reuse_stops_when_token_expires_at_sub_second_start(registry, codec, configuration, teacher, clock):
    clock.current = clock.current.replace(microsecond=700000)
    first = registry.open_session(configuration['id'], teacher.id)
    assert first['remaining_seconds'] == 89

    clock.advance(seconds=89, microseconds=500000)
    assert not codec.verify(first['token']).valid

    second = registry.open_session(configuration['id'], teacher.id)
    assert second['reused'] is False
    assert codec.verify(second['token']).valid
