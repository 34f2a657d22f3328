import threading
import time
from unittest.mock import Mock, patch

import pytest
import pytesseract
from fakes import FailingCapture, FakeCapture, FakeClock, StubClassifier, StubOcr

from tracker_agent.config import Settings
from tracker_agent.model.errors import (
    ClassificationFailure,
    ClassificationFailureKind,
    ConfigError,
    OcrFailure,
    OcrFailureKind,
    TrackerError,
)
from tracker_agent.model.models import UNKNOWN_LABEL, TrackingState
from tracker_agent.pipeline.ocr import TesseractOcr
from tracker_agent.scheduler import CaptureScheduler

SESSION_START = 1_700_000_000.0


@pytest.fixture
def clock():
    return FakeClock(0.0)


@pytest.fixture
def make_scheduler(make_pipeline, emitter, clock):
    """手動で tick するスケジューラを作る. 組み立てた Pipeline は built に残る"""
    schedulers = []

    def _make(run_timer=False, **pipeline_overrides):
        built = []

        def factory(settings):
            pipeline = make_pipeline(**pipeline_overrides)
            built.append(pipeline)
            return pipeline

        scheduler = CaptureScheduler(
            factory,
            emitter,
            failure_threshold=3,
            run_timer=run_timer,
            clock=clock,
            wall_clock=lambda: SESSION_START,
        )
        scheduler.built = built
        schedulers.append(scheduler)
        return scheduler

    yield _make
    for scheduler in schedulers:
        scheduler.shutdown(wait=True)


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.02)
    return condition()


def messages(emitter, level):
    return [log["message"] for log in emitter.recent_logs() if log["level"] == level]


class TestLifecycle:
    """トラッキングの状態遷移テスト"""

    def test_start_and_stop(self, make_scheduler, complete_settings, emitter):
        scheduler = make_scheduler()

        session = scheduler.start_tracking(complete_settings)

        assert scheduler.state is TrackingState.TRACKING
        assert session.started_at == SESSION_START
        assert emitter.last_status == {"state": "tracking"}

        scheduler.stop_tracking()
        assert scheduler.state is TrackingState.STOPPED
        assert scheduler.session is None

        # Stopped から再開できる
        scheduler.start_tracking(complete_settings)
        assert scheduler.state is TrackingState.TRACKING

    def test_missing_settings_block_start(self, make_scheduler, emitter):
        """必須設定が空なら開始せず Idle のまま"""
        scheduler = make_scheduler()

        with pytest.raises(ConfigError):
            scheduler.start_tracking(Settings(ai_api_key="sk-only"))

        assert scheduler.state is TrackingState.IDLE
        assert scheduler.built == []
        assert any("task_service_email" in m for m in messages(emitter, "error"))

    def test_start_twice_rejected(self, make_scheduler, complete_settings):
        scheduler = make_scheduler()
        scheduler.start_tracking(complete_settings)
        with pytest.raises(TrackerError):
            scheduler.start_tracking(complete_settings)

    def test_stop_when_idle_is_noop(self, make_scheduler, emitter):
        scheduler = make_scheduler()
        scheduler.stop_tracking()
        assert scheduler.state is TrackingState.IDLE
        assert "Tracking is not running" in messages(emitter, "info")

    def test_pause_and_resume(self, make_scheduler, complete_settings):
        scheduler = make_scheduler()
        scheduler.start_tracking(complete_settings)

        scheduler.pause_tracking()
        assert scheduler.state is TrackingState.PAUSED
        assert scheduler.tick(at=10.0) is None

        scheduler.resume_tracking()
        assert scheduler.state is TrackingState.TRACKING
        assert scheduler.tick(at=20.0).result(timeout=5).event is not None

    def test_invalid_pause_resume(self, make_scheduler, complete_settings):
        scheduler = make_scheduler()
        with pytest.raises(TrackerError):
            scheduler.pause_tracking()
        scheduler.start_tracking(complete_settings)
        with pytest.raises(TrackerError):
            scheduler.resume_tracking()


class TestTicks:
    """tick の実行テスト"""

    def test_three_ticks_ten_seconds_apart(
        self, make_scheduler, complete_settings, event_log
    ):
        """10秒間隔の3回の tick は 0/10/20 秒のイベントになる"""
        scheduler = make_scheduler()
        scheduler.start_tracking(complete_settings)

        for at in (0.0, 10.0, 20.0):
            scheduler.tick(at=at).result(timeout=5)

        events = event_log.recent()
        assert [e.timestamp for e in events] == [
            SESSION_START,
            SESSION_START + 10,
            SESSION_START + 20,
        ]
        assert all(e.activity_label != UNKNOWN_LABEL for e in events)
        assert scheduler.session.last_tick_at == SESSION_START + 20

    def test_tick_while_busy_is_skipped(
        self, make_scheduler, complete_settings, event_log, emitter
    ):
        """実行中の tick があれば次の tick は捨てる（キューに積まない）"""
        gate = threading.Event()
        ocr = StubOcr(gate=gate)
        scheduler = make_scheduler(ocr_engine=ocr)
        scheduler.start_tracking(complete_settings)

        running = scheduler.tick(at=0.0)
        assert ocr.started.wait(timeout=5)
        assert scheduler.busy

        assert scheduler.tick(at=10.0) is None
        assert any("tick skipped" in m for m in messages(emitter, "warning"))

        gate.set()
        running.result(timeout=5)
        assert len(event_log) == 1
        assert not scheduler.busy

    def test_stop_during_ocr_finishes_run(
        self, make_scheduler, complete_settings, event_log
    ):
        """OCR中に停止しても実行中のサンプルは記録され、新しい tick は起きない"""
        gate = threading.Event()
        ocr = StubOcr(gate=gate)
        scheduler = make_scheduler(ocr_engine=ocr)
        scheduler.start_tracking(complete_settings)

        running = scheduler.tick(at=0.0)
        assert ocr.started.wait(timeout=5)
        scheduler.stop_tracking()

        assert scheduler.state is TrackingState.STOPPED
        assert scheduler.tick(at=10.0) is None

        gate.set()
        outcome = running.result(timeout=5)
        assert outcome.event is not None
        assert len(event_log) == 1
        assert scheduler.state is TrackingState.STOPPED

    def test_after_idle_waits_for_running_pipeline(
        self, make_scheduler, complete_settings
    ):
        gate = threading.Event()
        ocr = StubOcr(gate=gate)
        scheduler = make_scheduler(ocr_engine=ocr)
        scheduler.start_tracking(complete_settings)
        called = threading.Event()

        running = scheduler.tick(at=0.0)
        assert ocr.started.wait(timeout=5)
        scheduler.stop_tracking()
        scheduler.after_idle(called.set)
        assert not called.is_set()

        gate.set()
        running.result(timeout=5)
        assert called.wait(timeout=5)

    def test_after_idle_runs_at_once_when_idle(self, make_scheduler):
        called = []
        make_scheduler().after_idle(lambda: called.append(True))
        assert called == [True]

    def test_timer_fires_ticks(self, make_pipeline, emitter, event_log, complete_settings):
        """タイマースレッドが開始直後と間隔ごとに tick する"""
        scheduler = CaptureScheduler(lambda settings: make_pipeline(), emitter)
        settings = complete_settings.model_copy(update={"interval_seconds": 1})
        try:
            scheduler.start_tracking(settings)
            assert wait_for(lambda: len(event_log) >= 2)
            scheduler.stop_tracking()
            scheduler.wait_idle(timeout=5)
        finally:
            scheduler.shutdown()

        events = event_log.recent()
        # 壁時計への換算で出る丸め誤差だけ許す
        assert events[1].timestamp - events[0].timestamp >= 1.0 - 1e-6

    def test_resume_waits_for_interval(
        self, make_pipeline, emitter, event_log, complete_settings
    ):
        """すぐに再開しても、一時停止前の tick から間隔を空けて次の tick が来る"""
        scheduler = CaptureScheduler(lambda settings: make_pipeline(), emitter)
        settings = complete_settings.model_copy(update={"interval_seconds": 1})
        try:
            scheduler.start_tracking(settings)
            assert wait_for(lambda: len(event_log) == 1)
            scheduler.pause_tracking()
            scheduler.resume_tracking()

            time.sleep(0.3)
            assert len(event_log) == 1

            assert wait_for(lambda: len(event_log) >= 2)
            scheduler.stop_tracking()
            scheduler.wait_idle(timeout=5)
        finally:
            scheduler.shutdown()

        events = event_log.recent()
        assert events[1].timestamp - events[0].timestamp >= 1.0 - 1e-6

    def test_tick_records_monotonic_time(self, make_scheduler, complete_settings):
        scheduler = make_scheduler()
        scheduler.start_tracking(complete_settings)

        scheduler.tick(at=7.5).result(timeout=5)

        assert scheduler.session.last_tick_mono == 7.5
        assert scheduler.session.last_tick_at == SESSION_START + 7.5

    def test_unexpected_error_counts_as_failure(
        self, make_scheduler, complete_settings, emitter
    ):
        scheduler = make_scheduler()
        scheduler.start_tracking(complete_settings)
        scheduler.built[0].preprocessor = Mock(process=Mock(side_effect=ValueError("bad")))

        outcome = scheduler.tick(at=0.0).result(timeout=5)

        assert outcome.counted_failure
        assert scheduler.session.consecutive_failures == 1
        assert any("bad" in m for m in messages(emitter, "error"))


class TestFailureThreshold:
    """連続失敗による Error 遷移のテスト"""

    def test_threshold_failures_enter_error(self, make_scheduler, complete_settings, emitter):
        scheduler = make_scheduler(capture=FailingCapture())
        scheduler.start_tracking(complete_settings)

        for at in (0.0, 10.0):
            scheduler.tick(at=at).result(timeout=5)
        assert scheduler.state is TrackingState.TRACKING
        assert scheduler.session.consecutive_failures == 2

        scheduler.tick(at=20.0).result(timeout=5)

        assert scheduler.state is TrackingState.ERROR
        assert emitter.last_status == {"state": "error"}
        assert any("3 consecutive failures" in m for m in messages(emitter, "error"))
        assert scheduler.tick(at=30.0) is None

    def test_fewer_failures_then_success_resets(
        self, make_scheduler, complete_settings
    ):
        scheduler = make_scheduler()
        scheduler.start_tracking(complete_settings)
        pipeline = scheduler.built[0]

        pipeline.capture = FailingCapture()
        for at in (0.0, 10.0):
            scheduler.tick(at=at).result(timeout=5)
        pipeline.capture = FakeCapture()
        scheduler.tick(at=20.0).result(timeout=5)
        assert scheduler.session.consecutive_failures == 0

        pipeline.capture = FailingCapture()
        for at in (30.0, 40.0):
            scheduler.tick(at=at).result(timeout=5)
        assert scheduler.state is TrackingState.TRACKING

    def test_ocr_timeouts_never_enter_error(self, make_scheduler, complete_settings):
        scheduler = make_scheduler(
            ocr_engine=StubOcr(error=OcrFailure(OcrFailureKind.TIMEOUT, "exceeded 30s"))
        )
        scheduler.start_tracking(complete_settings)

        for at in (0.0, 10.0, 20.0, 30.0):
            scheduler.tick(at=at).result(timeout=5)

        assert scheduler.state is TrackingState.TRACKING
        assert scheduler.session.consecutive_failures == 0

    def test_repeated_unauthorized_enters_error(
        self, make_scheduler, complete_settings, event_log
    ):
        """認証エラーは Unknown を記録しつつ失敗に数える"""
        classifier = StubClassifier(
            error=ClassificationFailure(ClassificationFailureKind.UNAUTHORIZED, "HTTP 401")
        )
        scheduler = make_scheduler(classifier=classifier)
        scheduler.start_tracking(complete_settings)

        for at in (0.0, 10.0, 20.0):
            scheduler.tick(at=at).result(timeout=5)

        assert scheduler.state is TrackingState.ERROR
        assert len(event_log) == 3

    def test_engine_unavailable_enters_error_in_one_tick(
        self, make_scheduler, complete_settings, emitter
    ):
        """Tesseract のインストールに失敗したら1回の tick で Error になる"""
        installer = Mock(
            side_effect=OcrFailure(
                OcrFailureKind.ENGINE_UNAVAILABLE, "automatic install is not supported"
            )
        )
        scheduler = make_scheduler(ocr_engine=TesseractOcr(installer=installer))
        scheduler.start_tracking(complete_settings)

        with patch(
            "pytesseract.image_to_data",
            side_effect=pytesseract.TesseractNotFoundError(),
        ):
            outcome = scheduler.tick(at=0.0).result(timeout=5)

        assert outcome.fatal
        assert scheduler.state is TrackingState.ERROR
        assert any("OCR engine unavailable" in m for m in messages(emitter, "error"))

        # Error からは stop で Idle に戻る. 再開は明示的に start する
        with pytest.raises(TrackerError):
            scheduler.start_tracking(complete_settings)
        scheduler.stop_tracking()
        assert scheduler.state is TrackingState.IDLE
