import threading

from app import create_app
from checkin.modules.database_manager import DatabaseManager


def _in_thread(func):
    result = {}

    def target():
        try:
            result['value'] = func()
        except Exception as e:
            result['error'] = e

    worker = threading.Thread(target=target)
    worker.start()
    worker.join()
    if 'error' in result:
        raise result['error']
    return result['value']


def test_memory_database_is_shared_across_threads():
    db = DatabaseManager(':memory:')
    db.execute_update("INSERT INTO classes (id, name) VALUES (?, ?)", ("c1", "Grade 5"))

    rows = _in_thread(lambda: db.execute_query("SELECT id, name FROM classes"))

    assert rows == [{'id': "c1", 'name': "Grade 5"}]
    db.close_all_connections()


def test_memory_database_writes_from_threads_are_visible():
    db = DatabaseManager(':memory:')
    workers = [
        threading.Thread(target=db.execute_update,
                         args=("INSERT INTO classes (id, name) VALUES (?, ?)", (f"c{n}", "Grade")))
        for n in range(8)
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert db.execute_query("SELECT COUNT(*) AS n FROM classes", fetch_all=False) == {'n': 8}
    db.close_all_connections()


def test_testing_config_serves_requests_from_other_threads():
    application = create_app('testing')
    roster = application.extensions['checkin']['roster_manager']
    roster.create_student("Ann", "Lee", student_id="s1")

    def scan():
        response = application.test_client().post('/api/scan', json={'payload': 'student:s1'})
        return response.status_code, response.get_json()

    status_code, data = _in_thread(scan)

    assert status_code == 200
    assert data['person']['id'] == "s1"
    application.extensions['checkin']['db_manager'].close_all_connections()


def test_file_database_keeps_one_connection_per_thread(tmp_path):
    db = DatabaseManager(tmp_path / "threads.db")
    with db.get_connection() as main_conn:
        pass

    with_other = _in_thread(lambda: db._connection() is main_conn)

    assert with_other is False
    db.close_all_connections()
