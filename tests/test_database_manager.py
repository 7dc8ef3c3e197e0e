import sqlite3
from datetime import datetime, timezone

import pytest

from qrattend.modules.activity_log import ActivityLog
from qrattend.modules.database_manager import DatabaseManager, from_db_timestamp, to_db_timestamp


def test_timestamps_round_trip_and_sort():
    earlier = datetime(2025, 3, 3, 9, 0, 0, tzinfo=timezone.utc)
    later = datetime(2025, 3, 3, 9, 0, 0, 1, tzinfo=timezone.utc)

    assert from_db_timestamp(to_db_timestamp(earlier)) == earlier
    assert to_db_timestamp(earlier) < to_db_timestamp(later)


def test_initialization_is_idempotent(tmp_path):
    path = tmp_path / 'nested' / 'attendance.db'
    DatabaseManager(path, default_admin_password='admin-pass')
    again = DatabaseManager(path, default_admin_password='admin-pass')

    admins = again.execute_query("SELECT COUNT(*) AS n FROM users WHERE role = 'admin'", fetch_all=False)
    assert admins['n'] == 1
    assert again.get_system_setting('system_name') == 'QR Attendance Gate'


def test_no_admin_without_password(db):
    assert db.execute_query("SELECT COUNT(*) AS n FROM users", fetch_all=False)['n'] == 0


def test_one_active_session_per_configuration(db, configuration, teacher):
    insert = """INSERT INTO sessions (id, configuration_id, owner_id, token, created_at, expires_at, is_active)
                VALUES (?, ?, ?, ?, '2025-01-01 00:00:00.000000', '2025-01-01 00:01:30.000000', ?)"""
    db.execute_update(insert, ('s1', configuration['id'], teacher.id, 't1', 1))
    db.execute_update(insert, ('s2', configuration['id'], teacher.id, 't2', 0))

    with pytest.raises(sqlite3.IntegrityError):
        db.execute_update(insert, ('s3', configuration['id'], teacher.id, 't3', 1))


def test_risk_score_is_bounded(db):
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_update(
            "INSERT INTO activity_logs (action, risk_score, created_at) VALUES ('x', 101, '2025')"
        )


def test_activity_log_clamps_risk(activity_log):
    event_id = activity_log.record(None, ActivityLog.ACTION_SUSPICIOUS, risk_score=150)
    assert activity_log.get_events()[0]['id'] == event_id
    assert activity_log.get_events()[0]['risk_score'] == 100


def test_system_settings_upsert(db):
    assert db.get_system_setting('late_threshold_minutes', '15') == '15'
    assert db.update_system_setting('late_threshold_minutes', 20)
    assert db.update_system_setting('late_threshold_minutes', 25)
    assert db.get_system_setting('late_threshold_minutes') == '25'


def test_transaction_rolls_back(db):
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            conn.execute("INSERT INTO system_settings (setting_key, setting_value) VALUES ('k', 'v')")
            raise RuntimeError('abort')
    assert db.get_system_setting('k') is None


def test_activity_purge(activity_log, clock):
    activity_log.record(1, ActivityLog.ACTION_LOGIN)
    clock.advance(days=10)
    activity_log.record(1, ActivityLog.ACTION_LOGOUT)

    assert activity_log.purge_older_than(5) == 1
    assert [e['action'] for e in activity_log.get_events()] == [ActivityLog.ACTION_LOGOUT]
