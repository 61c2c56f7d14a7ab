import asyncio
import time

import pytest

from examportal.core.exceptions import CameraUnavailableError, FullscreenDeniedError
from examportal.schemas.session import SessionState
from examportal.schemas.submission import WarningType
from examportal.session.integrity import IntegrityMonitor

from conftest import FakeCamera, FakeDetector, FakeDisplay, FakeMediaSink, NO_WAIT


class MonitorHarness:
    def __init__(self, state=SessionState.ANSWERING, sample_interval=NO_WAIT, **fakes):
        self.state = state
        self.violations = []
        self.notices = []
        self.camera = fakes.get("camera", FakeCamera())
        self.detector = fakes.get("detector", FakeDetector())
        self.display = fakes.get("display", FakeDisplay())
        self.media_sink = fakes.get("media_sink", FakeMediaSink())
        self.monitor = IntegrityMonitor(
            camera=self.camera,
            detector=self.detector,
            display=self.display,
            media_sink=self.media_sink,
            state_provider=lambda: self.state,
            on_violation=lambda warning_type, frame: self.violations.append(warning_type),
            on_notice=self.notices.append,
            sample_interval=sample_interval,
        )


@pytest.mark.parametrize("count,expected", [
    (0, [WarningType.NO_FACE]),
    (1, []),
    (2, [WarningType.MULTIPLE_FACES]),
    (5, [WarningType.MULTIPLE_FACES]),
])
async def test_face_count_violations(count, expected):
    h = MonitorHarness(detector=FakeDetector(count=count))
    assert await h.monitor.sample_once() == count
    assert h.violations == expected


async def test_detector_errors_count_as_one_face():
    h = MonitorHarness(detector=FakeDetector(error=RuntimeError("model crashed")))
    assert await h.monitor.sample_once() == 1
    assert h.violations == []


@pytest.mark.parametrize("state", [SessionState.INSTRUCTIONS, SessionState.SECTION_INTRO, SessionState.SUBMITTED])
async def test_sampling_only_while_answering(state):
    h = MonitorHarness(state=state, detector=FakeDetector(count=0))
    assert await h.monitor.sample_once() is None
    assert h.detector.calls == 0
    assert h.violations == []


async def test_sampling_waits_for_a_ready_camera():
    h = MonitorHarness(camera=FakeCamera(ready=False), detector=FakeDetector(count=0))
    assert await h.monitor.sample_once() is None
    assert h.detector.calls == 0


async def test_only_one_sample_in_flight():
    class SlowDetector(FakeDetector):
        def estimate_face_count(self, frame):
            self.calls += 1
            time.sleep(0.3)
            return 1

    h = MonitorHarness(sample_interval=0.02, detector=SlowDetector())
    h.monitor.start_sampling()
    await asyncio.sleep(0.15)
    assert h.detector.calls == 1
    h.monitor.release()
    assert not h.monitor.sampling


@pytest.mark.parametrize("state", [SessionState.SECTION_INTRO, SessionState.ANSWERING])
async def test_fullscreen_exit_is_a_violation_and_reenters(state):
    h = MonitorHarness(state=state)
    h.monitor.on_fullscreen_change(False)
    assert h.violations == [WarningType.FULLSCREEN_EXIT]
    await asyncio.sleep(0)
    assert h.display.requests == 1


@pytest.mark.parametrize("state", [SessionState.INSTRUCTIONS, SessionState.SUBMITTING, SessionState.SUBMITTED])
async def test_fullscreen_exit_ignored_outside_running_exam(state):
    h = MonitorHarness(state=state)
    h.monitor.on_fullscreen_change(False)
    await asyncio.sleep(0)
    assert h.violations == []
    assert h.display.requests == 0


async def test_failed_reentry_is_only_logged():
    h = MonitorHarness(display=FakeDisplay(deny=True))
    h.monitor.on_fullscreen_change(False)
    await asyncio.sleep(0)
    assert h.violations == [WarningType.FULLSCREEN_EXIT]


async def test_entering_fullscreen_is_not_a_violation():
    h = MonitorHarness()
    h.monitor.on_fullscreen_change(True)
    assert h.violations == []


@pytest.mark.parametrize("state,expected", [
    (SessionState.ANSWERING, [WarningType.TAB_SWITCH]),
    (SessionState.SECTION_INTRO, []),
    (SessionState.INSTRUCTIONS, []),
    (SessionState.SUBMITTED, []),
])
async def test_tab_switch_only_while_answering(state, expected):
    h = MonitorHarness(state=state)
    h.monitor.on_visibility_change(True)
    h.monitor.on_visibility_change(False)
    assert h.violations == expected


@pytest.mark.parametrize("state", [SessionState.INSTRUCTIONS, SessionState.ANSWERING])
async def test_clipboard_is_blocked_with_a_notice_only(state):
    h = MonitorHarness(state=state)
    assert h.monitor.on_clipboard("paste") is True
    assert h.monitor.on_clipboard("scroll") is False
    assert h.notices == ["Paste is disabled during the exam"]
    assert h.violations == []


async def test_camera_is_acquired_once():
    h = MonitorHarness()
    await h.monitor.acquire_camera()
    await h.monitor.acquire_camera()
    assert h.camera.open_calls == 1
    assert h.monitor.camera_acquired


async def test_camera_failure_is_fatal():
    h = MonitorHarness(camera=FakeCamera(fail=True))
    with pytest.raises(CameraUnavailableError):
        await h.monitor.acquire_camera()
    assert not h.monitor.camera_acquired


async def test_unexpected_camera_errors_become_camera_unavailable():
    class BrokenCamera(FakeCamera):
        async def open(self):
            raise OSError("device busy")

    h = MonitorHarness(camera=BrokenCamera())
    with pytest.raises(CameraUnavailableError):
        await h.monitor.acquire_camera()


async def test_fullscreen_denial_is_fatal():
    h = MonitorHarness(display=FakeDisplay(deny=True))
    with pytest.raises(FullscreenDeniedError):
        await h.monitor.enter_fullscreen()


async def test_capture_warning_image_uploads_jpeg():
    h = MonitorHarness()
    url = await h.monitor.capture_warning_image()
    assert url == "http://media.test/uploads/warnings/1.jpg"
    assert h.media_sink.stored[0][:2] == b"\xff\xd8"


async def test_capture_failures_return_none():
    h = MonitorHarness(media_sink=FakeMediaSink(error=IOError("disk full")))
    assert await h.monitor.capture_warning_image() is None

    h = MonitorHarness(camera=FakeCamera())
    h.camera.frame = None
    assert await h.monitor.capture_warning_image() is None


async def test_release_is_idempotent():
    h = MonitorHarness()
    await h.monitor.acquire_camera()
    h.monitor.start_sampling()
    h.monitor.release()
    h.monitor.release()
    assert h.camera.released == 1
    assert not h.monitor.sampling
