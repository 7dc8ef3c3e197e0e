import gc

import pytest

from qrattend.web import create_app


@pytest.fixture
def app(tmp_path, clock):
    app = create_app('testing', overrides={'DATABASE_PATH': str(tmp_path / 'web.db')}, clock=clock)
    auth = app.extensions['qrattend']['auth']
    auth.create_user('teacher@school.edu', 'teach-pass', 'Grace Hopper', role='teacher',
                     department='Computer Science')
    auth.create_user('ada@school.edu', 'ada-pass', 'Ada Lovelace', role='student',
                     department='Computer Science', batch='2025', student_number='CS-001')
    auth.create_user('bob@school.edu', 'bob-pass', 'Bob Babbage', role='student',
                     department='Computer Science', batch='2025', student_number='CS-002')
    auth.create_user('eve@school.edu', 'eve-pass', 'Eve Euler', role='student',
                     department='Mathematics', batch='2025', student_number='MA-001')
    auth.create_user('admin@school.edu', 'admin-pass', 'Operator', role='admin')
    yield app
    app.extensions['qrattend']['notifier'].shutdown()


@pytest.fixture
def login(app):
    def _login(email, password):
        client = app.test_client()
        # Distinct user agents give each client its own device fingerprint
        client.environ_base['HTTP_USER_AGENT'] = f'device-of-{email}'
        response = client.post('/login', json={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return client
    return _login


@pytest.fixture
def teacher_client(login):
    return login('teacher@school.edu', 'teach-pass')


@pytest.fixture
def configuration_id(teacher_client):
    response = teacher_client.post('/api/configurations', json={
        'department': 'Computer Science', 'batch': '2025', 'course': 'Operating Systems',
        'class_type': 'theory', 'section': 'A'
    })
    assert response.status_code == 201
    return response.get_json()['data']['configuration']['id']


@pytest.fixture
def opened(teacher_client, configuration_id):
    response = teacher_client.post(f'/api/configurations/{configuration_id}/session')
    assert response.status_code == 201
    return response.get_json()['data']


def test_login_failure(app):
    client = app.test_client()
    response = client.post('/login', json={'email': 'ada@school.edu', 'password': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['success'] is False

    response = client.post('/login', json={})
    assert response.status_code == 400


def test_routes_require_login(app):
    client = app.test_client()
    response = client.post('/api/attendance/scan', json={'qr_token': 'x'})
    assert response.status_code == 401
    assert response.get_json()['error_type'] == 'authentication_error'


def test_roles_are_enforced(login):
    student = login('ada@school.edu', 'ada-pass')
    response = student.post('/api/configurations', json={})
    assert response.status_code == 403

    teacher = login('teacher@school.edu', 'teach-pass')
    assert teacher.post('/api/attendance/scan', json={'qr_token': 'x'}).status_code == 403


def test_configuration_crud(teacher_client, configuration_id):
    listed = teacher_client.get('/api/configurations').get_json()['data']['configurations']
    assert [c['id'] for c in listed] == [configuration_id]

    duplicate = teacher_client.post('/api/configurations', json={
        'department': 'Computer Science', 'batch': '2025', 'course': 'Operating Systems',
        'class_type': 'theory', 'section': 'A'
    })
    assert duplicate.status_code == 409

    updated = teacher_client.put(f'/api/configurations/{configuration_id}', json={'course': 'Distributed Systems'})
    assert updated.get_json()['data']['configuration']['course'] == 'Distributed Systems'

    assert teacher_client.delete(f'/api/configurations/{configuration_id}').status_code == 200
    assert teacher_client.get('/api/configurations').get_json()['data']['configurations'] == []
    assert teacher_client.post(f'/api/configurations/{configuration_id}/session').status_code == 404


def test_open_session_returns_qr_and_reuses(teacher_client, configuration_id, opened):
    assert opened['qr_code'].startswith('data:image/png;base64,')
    assert opened['remaining_seconds'] == 90
    assert opened['reused'] is False

    again = teacher_client.post(f'/api/configurations/{configuration_id}/session')
    assert again.status_code == 200
    assert again.get_json()['data']['session']['id'] == opened['session']['id']


def test_scan_flow(login, teacher_client, opened):
    ada = login('ada@school.edu', 'ada-pass')

    first = ada.post('/api/attendance/scan', json={'qr_token': opened['token']})
    assert first.status_code == 200
    body = first.get_json()
    assert body['success'] is True
    assert body['data']['attendance_record']['status'] == 'present'

    second = ada.post('/api/attendance/scan', json={'qr_token': opened['token']})
    assert second.status_code == 409
    assert second.get_json()['error_type'] == 'already_marked'
    assert second.get_json()['data']['status'] == 'present'

    stats = teacher_client.get(f"/api/sessions/{opened['session']['id']}/stats").get_json()['data']
    assert stats['attendance_count'] == 1
    assert stats['total_scans'] == 2
    assert stats['recent_attendees'][0]['student_name'] == 'Ada Lovelace'


def test_scan_rejections(login, opened, clock):
    eve = login('eve@school.edu', 'eve-pass')
    wrong_cohort = eve.post('/api/attendance/scan', json={'qr_token': opened['token']})
    assert wrong_cohort.status_code == 403

    bob = login('bob@school.edu', 'bob-pass')
    garbage = bob.post('/api/attendance/scan', json={'qr_token': 'garbage'})
    assert garbage.status_code == 400
    assert garbage.get_json()['message'] == 'Invalid or expired QR code'

    clock.advance(seconds=120)
    expired = bob.post('/api/attendance/scan', json={'qr_token': opened['token']})
    assert expired.status_code == 400
    assert expired.get_json() == garbage.get_json()


def test_closed_session_rejects_scans(login, teacher_client, opened):
    closed = teacher_client.post(f"/api/sessions/{opened['session']['id']}/close")
    assert closed.status_code == 200

    ada = login('ada@school.edu', 'ada-pass')
    response = ada.post('/api/attendance/scan', json={'qr_token': opened['token']})
    assert response.status_code == 400
    assert response.get_json()['error_type'] == 'invalid_token'


def test_excuse_and_history(app, login, teacher_client, opened):
    bob_id = app.extensions['qrattend']['auth'].authenticate_user('bob@school.edu', 'bob-pass').id
    excused = teacher_client.post(f"/api/sessions/{opened['session']['id']}/excuse",
                                  json={'student_id': bob_id, 'note': 'Conference'})
    assert excused.status_code == 201

    again = teacher_client.post(f"/api/sessions/{opened['session']['id']}/excuse",
                                json={'student_id': bob_id})
    assert again.status_code == 409

    bob = login('bob@school.edu', 'bob-pass')
    history = bob.get('/api/attendance/history').get_json()['data']
    assert history['statistics']['excused'] == 1
    assert history['statistics']['attendance_rate'] == 100.0

    bad = bob.get('/api/attendance/history?start_date=yesterday')
    assert bad.status_code == 400


def test_unknown_session_is_not_found(teacher_client):
    assert teacher_client.get('/api/sessions/doesnotexist/stats').status_code == 404
    assert teacher_client.post('/api/sessions/doesnotexist/close').status_code == 404


def test_admin_views(login, opened):
    login('bob@school.edu', 'bob-pass').post('/api/attendance/scan', json={'qr_token': 'garbage'})

    admin = login('admin@school.edu', 'admin-pass')
    events = admin.get('/api/admin/flagged?min_risk=50').get_json()['data']['events']
    assert len(events) == 1
    assert events[0]['details']['reason'] == 'invalid_qr_token'

    alerts = admin.get('/api/admin/alerts').get_json()['data']['alerts']
    assert alerts[0]['severity'] == 'warning'

    assert admin.get('/api/admin/flagged?hours=soon').status_code == 400

    stats = admin.get(f"/api/sessions/{opened['session']['id']}/stats")
    assert stats.status_code == 200


def test_logout_ends_session(app, login):
    ada = login('ada@school.edu', 'ada-pass')
    assert ada.post('/logout').status_code == 200
    assert ada.get('/api/attendance/history').status_code == 401


def test_login_rejects_malformed_bodies(app):
    client = app.test_client()
    assert client.post('/login', json=['ada@school.edu', 'ada-pass']).status_code == 400

    response = client.post('/login', json={'email': 42, 'password': 'ada-pass'})
    assert response.status_code == 400
    assert response.get_json()['error_type'] == 'validation_error'


def test_configuration_input_types(teacher_client):
    numeric_batch = teacher_client.post('/api/configurations', json={
        'department': 'Computer Science', 'batch': 2025, 'course': 'Compilers', 'class_type': 'lab'
    })
    assert numeric_batch.status_code == 201
    assert numeric_batch.get_json()['data']['configuration']['batch'] == '2025'

    nested = teacher_client.post('/api/configurations', json={
        'department': ['Computer Science'], 'batch': '2025', 'course': 'Compilers', 'class_type': 'lab'
    })
    assert nested.status_code == 400

    not_an_object = teacher_client.post('/api/configurations', json=['Computer Science'])
    assert not_an_object.status_code == 400


def test_scan_rejects_malformed_bodies(login, opened):
    ada = login('ada@school.edu', 'ada-pass')
    assert ada.post('/api/attendance/scan', json=[opened['token']]).status_code == 400
    assert ada.post('/api/attendance/scan', json={'qr_token': opened['token'],
                                                  'location': 'classroom'}).status_code == 400


def test_flagged_query_parameters_are_bounded(login):
    admin = login('admin@school.edu', 'admin-pass')

    huge = admin.get('/api/admin/flagged?hours=99999999999999')
    assert huge.status_code == 200
    assert huge.get_json()['data']['events'] == []

    assert admin.get('/api/admin/flagged?limit=-5').status_code == 200
    assert admin.get('/api/admin/flagged?limit=many').status_code == 400
    assert admin.get('/api/admin/alerts?limit=lots').status_code == 400


def test_rate_limited_routes_survive_garbage_collection(app):
    gc.collect()
    client = app.test_client()
    response = client.post('/login', json={'email': 'ada@school.edu', 'password': 'ada-pass'})
    assert response.status_code == 200
