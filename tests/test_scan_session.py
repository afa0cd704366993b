import threading

import pytest

from checkin.modules.scan_session import OpenCVCamera, ScanGuard, ScanningSession

from conftest import SCAN_DATE


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class FakeCamera:
    """Frame source replaying a fixed list of decoded payloads."""

    def __init__(self, frames=(), fail_on_open=False):
        self.frames = list(frames)
        self.fail_on_open = fail_on_open
        self.opened = 0
        self.released = 0

    def open(self):
        if self.fail_on_open:
            raise RuntimeError("camera busy")
        self.opened += 1

    def read_payload(self):
        if not self.frames:
            return None
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame

    def release(self):
        self.released += 1


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def guard(clock):
    return ScanGuard(cooldown_seconds=5.0, clock=clock)


def test_guard_suppresses_in_flight_payload(guard):
    with guard.claim("student:s1") as first:
        assert first
        with guard.claim("student:s1") as second:
            assert not second
        with guard.claim("student:s2") as other:
            assert other


def test_guard_cooldown_expires(guard, clock):
    with guard.claim("student:s1") as owned:
        assert owned

    clock.now += 4.9
    assert not guard.acquire("student:s1")
    clock.now += 0.2
    assert guard.acquire("student:s1")


def test_guard_releases_when_processing_fails(guard, clock):
    with pytest.raises(ValueError):
        with guard.claim("student:s1"):
            raise ValueError("boom")

    clock.now += 5.0
    assert guard.acquire("student:s1")


def test_guard_allows_one_of_many_concurrent_claims():
    guard = ScanGuard(cooldown_seconds=60.0)
    barrier = threading.Barrier(8)
    wins = []

    def attempt():
        barrier.wait()
        if guard.acquire("student:s1"):
            wins.append(True)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(wins) == 1


def test_session_checks_in_and_ignores_held_code(seeded, store, resolver, guard, codec):
    payload = codec.encode("student", "s1", "Ann Lee", "Grade 5")
    camera = FakeCamera([payload, None, payload, payload])
    seen = []

    with ScanningSession(resolver, seeded.snapshot, store, camera, guard=guard,
                         on_result=seen.append, on_date=SCAN_DATE) as session:
        session.run(max_frames=4)

    assert camera.opened == 1
    assert camera.released == 1
    assert [outcome.success for outcome in seen] == [True, False, False]
    assert all(outcome.duplicate for outcome in seen[1:])
    assert seen[1].to_dict()["error_type"] == "duplicate_scan"
    assert len(store.list_attendance(SCAN_DATE)) == 1


def test_session_reports_errors_and_keeps_scanning(seeded, store, resolver, guard):
    camera = FakeCamera(["staff:xyz789", "https://shop.example/p/1", "student:s1"])

    with ScanningSession(resolver, seeded.snapshot, store, camera, guard=guard,
                         on_date=SCAN_DATE) as session:
        session.run(max_frames=3)

    results = session.results
    assert [r.success for r in results] == [False, False, True]
    assert results[0].to_dict()["error_type"] == "person_not_found"
    assert results[1].to_dict()["error_type"] == "decode_error"
    assert camera.released == 1


def test_camera_released_when_frame_read_raises(seeded, store, resolver):
    camera = FakeCamera([RuntimeError("device unplugged")])
    session = ScanningSession(resolver, seeded.snapshot, store, camera)

    with pytest.raises(RuntimeError):
        with session:
            session.run()

    assert camera.released == 1
    assert not session.active


def test_camera_released_when_caller_raises(seeded, store, resolver):
    camera = FakeCamera()
    with pytest.raises(KeyError):
        with ScanningSession(resolver, seeded.snapshot, store, camera):
            raise KeyError("ui closed")
    assert camera.released == 1


def test_stop_ends_run_loop(seeded, store, resolver, codec):
    camera = FakeCamera([None] * 10)
    session = ScanningSession(resolver, seeded.snapshot, store, camera,
                              on_result=lambda outcome: session.stop())
    camera.frames[2] = "student:s1"

    with session:
        session.run()

    assert len(session.results) == 1
    assert camera.frames == [None] * 7
    assert camera.released == 1


def test_failed_open_leaves_session_inactive(seeded, store, resolver):
    camera = FakeCamera(fail_on_open=True)
    session = ScanningSession(resolver, seeded.snapshot, store, camera)

    with pytest.raises(RuntimeError):
        session.start()
    assert not session.active
    with pytest.raises(RuntimeError):
        session.poll()
    session.close()
    assert camera.released == 0


def test_roster_refresh_is_picked_up_mid_session(roster_manager, store, resolver):
    camera = FakeCamera()
    with ScanningSession(resolver, roster_manager.snapshot, store, camera,
                         guard=ScanGuard(cooldown_seconds=0), on_date=SCAN_DATE) as session:
        assert not session.process_payload("student:late1").success
        roster_manager.create_student("Lia", "Tan", student_id="late1")
        assert session.process_payload("student:late1").success


class StubCapture:
    """cv2.VideoCapture stand-in returning a scripted sequence of read() results."""

    def __init__(self, reads):
        self.reads = list(reads)
        self.read_count = 0
        self.released = False

    def read(self):
        self.read_count += 1
        return self.reads.pop(0) if self.reads else (False, None)

    def release(self):
        self.released = True


class StubDetector:
    def detectAndDecode(self, frame):
        return frame, None, None


class StubCamera(OpenCVCamera):
    def __init__(self, capture, **kwargs):
        super().__init__(**kwargs)
        self.stub_capture = capture

    def open(self):
        self._capture = self.stub_capture
        self._detector = StubDetector()
        self._failed_reads = 0


def test_dead_camera_ends_run_and_releases(seeded, store, resolver):
    capture = StubCapture([])
    camera = StubCamera(capture, max_failed_reads=5)
    session = ScanningSession(resolver, seeded.snapshot, store, camera)

    with pytest.raises(RuntimeError, match="no frame 5 times in a row"):
        with session:
            session.run(max_frames=100000)

    assert capture.read_count == 5
    assert capture.released
    assert not camera.is_open
    assert not session.active


def test_occasional_dropped_frames_are_tolerated(seeded, store, resolver):
    reads = [(False, None), (False, None), (True, "student:s1"), (False, None), (False, None)]
    capture = StubCapture(reads)
    camera = StubCamera(capture, max_failed_reads=3)

    with ScanningSession(resolver, seeded.snapshot, store, camera,
                         on_date=SCAN_DATE) as session:
        session.run(max_frames=5)

    assert [r.success for r in session.results] == [True]
    assert capture.released
