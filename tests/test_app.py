from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

import pytest

import app as app_module
from app import create_app
from checkin.modules.errors import SinkError
from checkin.modules.scan_session import ScanGuard
from config import DevelopmentConfig, TestingConfig, get_config


@pytest.fixture()
def app(tmp_path):
    application = create_app('testing', database_path=tmp_path / "app_test.db")
    roster = application.extensions['checkin']['roster_manager']
    roster.create_class("Grade 5", class_id="c1")
    roster.create_student("Ann", "Lee", class_id="c1", student_id="s1")
    roster.create_staff("Bob", "Ray", "Science", staff_id="t1")
    yield application
    application.extensions['checkin']['db_manager'].close_all_connections()


@pytest.fixture()
def client(app):
    return app.test_client()


def _path_of(url):
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}"


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok'}


def test_scan_checks_student_in(client):
    response = client.post('/api/scan', json={'payload': 'student:s1'})

    assert response.status_code == 200
    data = response.get_json()
    assert data['success'] is True
    assert data['person']['name'] == "Ann Lee"
    assert data['attendance']['status'] == "present"
    assert data['attendance']['class_id'] == "c1"
    assert data['context'] == "Grade 5"
    assert data['fallback_match'] is False

    listing = client.get('/api/attendance').get_json()
    assert [r['student_id'] for r in listing['records']] == ["s1"]


def test_scan_accepts_qr_code_key_and_reports_department(client):
    response = client.post('/api/scan', json={'qr_code': '{"type": "staff", "id": "t1"}'})
    data = response.get_json()
    assert data['success'] is True
    assert data['context'] == "Science"


def test_attendance_check_url_from_generated_code(client):
    qr = client.get('/api/qr/student/s1').get_json()
    assert qr['success'] is True
    assert "name=Ann%20Lee" in qr['payload']
    assert "class=Grade%205" in qr['payload']
    assert qr['image_base64']

    response = client.get(_path_of(qr['payload']))
    assert response.status_code == 200
    assert response.get_json()['person']['id'] == "s1"


def test_scan_twice_keeps_one_record(client):
    client.post('/api/scan', json={'payload': 'student:s1'})
    client.post('/api/scan', json={'payload': 's1'})

    records = client.get('/api/attendance?type=student').get_json()['records']
    assert len(records) == 1


def test_duplicate_scan_is_rejected(app, client):
    app.extensions['checkin']['scan_guard'] = ScanGuard(cooldown_seconds=60)

    first = client.post('/api/scan', json={'payload': 'student:s1'})
    second = client.post('/api/scan', json={'payload': 'student:s1'})

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.get_json()['error_type'] == "duplicate_scan"


@pytest.mark.parametrize("body,status_code,error_type", [
    ({}, 400, "validation_error"),
    ({'payload': 'https://shop.example/product/42'}, 400, "decode_error"),
    ({'payload': 'staff:xyz789'}, 404, "person_not_found"),
])
def test_scan_errors(client, body, status_code, error_type):
    response = client.post('/api/scan', json=body)
    assert response.status_code == status_code
    data = response.get_json()
    assert data['success'] is False
    assert data['error_type'] == error_type


def test_not_found_message_mentions_roster_size(client):
    data = client.post('/api/scan', json={'payload': 'staff:xyz789'}).get_json()
    assert "1 students and 1 staff" in data['message']
    assert data['person_id'] == "xyz789"


def test_ambiguous_name_is_a_conflict(app, client):
    app.extensions['checkin']['roster_manager'].create_student("Ann", "Lee", student_id="s2")
    payload = app.extensions['checkin']['codec'].encode("student", "stale", "Ann Lee")

    response = client.post('/api/scan', json={'payload': payload})
    assert response.status_code == 409
    assert sorted(response.get_json()['candidate_ids']) == ["s1", "s2"]


def test_manual_mark_other_needs_label(client):
    body = {'type': 'student', 'id': 's1', 'context_id': 'c1', 'status': 'other',
            'date': '2024-05-01'}

    response = client.post('/api/attendance', json=body)
    assert response.status_code == 400
    assert response.get_json()['field'] == "custom_label"

    body['custom_label'] = "Field trip"
    response = client.post('/api/attendance', json=body)
    assert response.status_code == 200
    data = response.get_json()
    assert data['message'] == "Attendance marked as Field trip"
    assert data['attendance']['date'] == "2024-05-01"


def test_manual_mark_replaces_scan(client):
    client.post('/api/scan', json={'payload': 'student:s1'})
    today = client.get('/api/attendance').get_json()['date']

    client.post('/api/attendance', json={'type': 'student', 'id': 's1', 'context_id': 'c1',
                                         'status': 'tardy', 'date': today})

    records = client.get(f'/api/attendance?date={today}').get_json()['records']
    assert [r['status'] for r in records] == ["tardy"]


def test_manual_mark_accepts_numeric_id_and_label(client):
    response = client.post('/api/attendance', json={'type': 'student', 'id': 123, 'status': 'other',
                                                     'custom_label': 7, 'date': '2024-05-01'})

    assert response.status_code == 200
    attendance = response.get_json()['attendance']
    assert attendance['student_id'] == "123"
    assert attendance['custom_label'] == "7"


def test_manual_mark_zero_is_a_valid_id(client):
    response = client.post('/api/attendance', json={'type': 'staff', 'id': 0, 'status': 'present',
                                                     'date': '2024-05-01'})
    assert response.status_code == 200
    assert response.get_json()['attendance']['staff_id'] == "0"


@pytest.mark.parametrize("body,field", [
    ({'type': 'student', 'status': 'present'}, "id"),
    ({'type': 'student', 'id': 's1', 'status': 'present', 'date': 20240501}, "date"),
])
def test_manual_mark_invalid_body_is_a_400(client, body, field):
    response = client.post('/api/attendance', json=body)
    assert response.status_code == 400
    assert response.get_json()['field'] == field


def test_list_attendance_rejects_bad_date(client):
    response = client.get('/api/attendance?date=05/01/2024')
    assert response.status_code == 400
    assert response.get_json()['field'] == "date"


@pytest.mark.parametrize("url,status_code", [
    ('/api/qr/student/nobody', 404),
    ('/api/qr/teacher/s1', 400),
])
def test_qr_route_errors(client, url, status_code):
    assert client.get(url).status_code == status_code


def test_staff_qr_code(client):
    data = client.get('/api/qr/staff/t1').get_json()
    assert data['type'] == "staff"
    assert "class=Science" in data['payload']


def test_expired_payload_rejected_when_max_age_configured(tmp_path, monkeypatch):
    monkeypatch.setattr(TestingConfig, 'PAYLOAD_MAX_AGE_HOURS', 1.0)
    application = create_app('testing', database_path=tmp_path / "expiry.db")
    components = application.extensions['checkin']
    components['roster_manager'].create_student("Ann", "Lee", student_id="s1")
    payload = components['codec'].encode(
        "student", "s1", "Ann Lee", issued_at=datetime.now(timezone.utc) - timedelta(hours=2)
    )

    response = application.test_client().post('/api/scan', json={'payload': payload})
    assert response.status_code == 400
    assert response.get_json()['error_type'] == "expired_payload"
    components['db_manager'].close_all_connections()


def test_invalid_configuration_refuses_to_start(tmp_path, monkeypatch):
    monkeypatch.setattr(TestingConfig, 'APP_BASE_URL', 'school.example')
    with pytest.raises(RuntimeError):
        create_app('testing', database_path=tmp_path / "bad.db")


def test_get_config_reads_flask_env(monkeypatch):
    monkeypatch.setenv('FLASK_ENV', 'testing')
    assert get_config() is TestingConfig
    monkeypatch.setenv('FLASK_ENV', 'unknown')
    assert get_config() is DevelopmentConfig


def test_storage_failure_maps_to_503(app, client, monkeypatch):
    def broken_replace(record):
        raise SinkError("database is locked", phase='replace')

    monkeypatch.setattr(app.extensions['checkin']['attendance_store'],
                        'replace_attendance', broken_replace)

    response = client.post('/api/scan', json={'payload': 'student:s1'})
    assert response.status_code == 503
    data = response.get_json()
    assert data['error_type'] == "sink_error"
    assert data['phase'] == "replace"


def test_batch_qr_codes_saved_to_configured_folder(app, client, monkeypatch, tmp_path):
    monkeypatch.setattr(TestingConfig, 'QR_CODES_FOLDER', tmp_path / "qr_codes")

    data = client.post('/api/qr/batch', json={'save': True, 'with_caption': False}).get_json()

    assert data['success'] is True
    assert data['total'] == 2
    assert data['successful'] == 2
    saved = sorted(p.name for p in (tmp_path / "qr_codes").iterdir())
    assert saved == sorted(r['filename'] for r in data['results'])
    assert "class=Grade%205" in data['results'][0]['payload']


def test_camera_scanner_checks_in_until_interrupted(app, monkeypatch):
    class InterruptedCamera:
        released = False

        def __init__(self):
            self.frames = ['student:s1', KeyboardInterrupt()]

        def open(self):
            pass

        def read_payload(self):
            frame = self.frames.pop(0)
            if isinstance(frame, BaseException):
                raise frame
            return frame

        def release(self):
            InterruptedCamera.released = True

    monkeypatch.setattr(app_module.OpenCVCamera, 'from_config',
                        classmethod(lambda cls, config: InterruptedCamera()))

    app_module.run_camera_scanner(app)

    assert InterruptedCamera.released
    store = app.extensions['checkin']['attendance_store']
    assert [r.person_id for r in store.list_attendance()] == ["s1"]
