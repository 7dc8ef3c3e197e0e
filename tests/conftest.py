from datetime import datetime, timedelta, timezone

import pytest

from qrattend.modules.abuse_monitor import AbuseMonitor
from qrattend.modules.activity_log import ActivityLog, RequestContext
from qrattend.modules.admission_gate import AdmissionGate
from qrattend.modules.alert_notifier import AlertNotifier
from qrattend.modules.auth_manager import AuthManager
from qrattend.modules.configuration_manager import ConfigurationManager
from qrattend.modules.database_manager import DatabaseManager
from qrattend.modules.session_registry import SessionRegistry
from qrattend.modules.token_codec import TokenCodec

SECRET = 'test-signing-secret'
START = datetime(2025, 3, 3, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=START):
        self.current = start

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / 'attendance.db')
    yield manager
    manager.close_all_connections()


@pytest.fixture
def activity_log(db, clock):
    return ActivityLog(db, clock)


@pytest.fixture
def notifier():
    return AlertNotifier(async_delivery=False)


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, clock, ttl_seconds=90)


@pytest.fixture
def configurations(db, activity_log, clock):
    return ConfigurationManager(db, activity_log, clock)


@pytest.fixture
def registry(db, codec, configurations, activity_log, clock):
    return SessionRegistry(db, codec, configurations, activity_log, clock)


@pytest.fixture
def monitor(db, activity_log, notifier):
    return AbuseMonitor(db, activity_log, notifier, cooldown_minutes=5)


@pytest.fixture
def gate(db, codec, registry, monitor, activity_log, clock):
    return AdmissionGate(db, codec, registry, monitor, activity_log, clock, late_threshold_minutes=15)


@pytest.fixture
def auth(db, activity_log):
    return AuthManager(db, activity_log)


@pytest.fixture
def teacher(auth):
    return auth.create_user('teacher@school.edu', 'teach-pass', 'Grace Hopper', role='teacher',
                            department='Computer Science')


@pytest.fixture
def other_teacher(auth):
    return auth.create_user('other@school.edu', 'other-pass', 'Alan Turing', role='teacher',
                            department='Computer Science')


@pytest.fixture
def student(auth):
    return auth.create_user('ada@school.edu', 'student-pass', 'Ada Lovelace', role='student',
                            department='Computer Science', batch='2025', section='A',
                            student_number='CS-001')


@pytest.fixture
def make_student(auth):
    counter = {'n': 0}

    def _make(department='Computer Science', batch='2025'):
        counter['n'] += 1
        n = counter['n']
        return auth.create_user(f'student{n}@school.edu', 'student-pass', f'Student {n}',
                                role='student', department=department, batch=batch,
                                student_number=f'S-{n:03d}')
    return _make


@pytest.fixture
def configuration(configurations, teacher):
    return configurations.create_configuration(
        teacher.id, department='Computer Science', batch='2025', course='Data Structures',
        class_type='theory', section='A'
    )


@pytest.fixture
def device():
    return RequestContext(device_fingerprint='a' * 64, ip_address='10.0.0.5', user_agent='pytest')


@pytest.fixture
def device_for():
    """A distinct device per index."""
    def _device(n):
        return RequestContext(device_fingerprint=f'{n:064x}', ip_address=f'10.0.1.{n}',
                              user_agent='pytest')
    return _device
