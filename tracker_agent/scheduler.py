"""Capture scheduler and tracking lifecycle.

States::

    Idle --start--> Tracking --stop--> Stopped --start--> Tracking
    Tracking --pause--> Paused --resume--> Tracking
    Tracking --N consecutive failures--> Error --stop--> Idle

A control thread fires one tick per interval.  Each tick hands a pipeline run
to a single worker thread; a tick that arrives while a run is still going is
dropped, never queued.
"""

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from tracker_agent.config import Settings
from tracker_agent.logger import logger
from tracker_agent.model.errors import ConfigError, TrackerError
from tracker_agent.model.models import TrackingSession, TrackingState
from tracker_agent.pipeline.runner import Pipeline, RunOutcome
from tracker_agent.services.emitter import EventEmitter

FAILURE_THRESHOLD = 3

PipelineFactory = Callable[[Settings], Pipeline]


class CaptureScheduler:
    """トラッキングの状態機械とタイマーを持つ."""

    def __init__(
        self,
        pipeline_factory: PipelineFactory,
        emitter: EventEmitter,
        failure_threshold: int = FAILURE_THRESHOLD,
        *,
        run_timer: bool = True,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """初期化

        Args:
        pipeline_factory: セッション開始時に設定から Pipeline を組み立てる関数
        emitter: UIへの通知チャネル
        failure_threshold: Error に遷移する連続失敗回数
        run_timer: False の場合タイマースレッドを起動しない（tick を手動で呼ぶ）
        clock: スケジューリング用のモノトニック時計
        wall_clock: セッション開始時刻の壁時計

        """
        self.pipeline_factory = pipeline_factory
        self.emitter = emitter
        self.failure_threshold = failure_threshold
        self.run_timer = run_timer
        self._clock = clock
        self._wall_clock = wall_clock

        self._lock = threading.RLock()
        self._state = TrackingState.IDLE
        self.session: TrackingSession | None = None
        self._pipeline: Pipeline | None = None
        self._busy = False
        self._current: Future[RunOutcome] | None = None
        self._timer_stop: threading.Event | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline")

    @property
    def state(self) -> TrackingState:
        with self._lock:
            return self._state

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    # ------------------------------------------------------------------
    # Commands
    def start_tracking(self, settings: Settings) -> TrackingSession:
        """新しいセッションで Tracking を開始する.

        Raises:
            ConfigError: 必須設定が空
            TrackerError: 既に実行中、または Error 状態

        """
        with self._lock:
            if self._state in (TrackingState.TRACKING, TrackingState.PAUSED):
                msg = "Tracking is already running"
                raise TrackerError(msg)
            if self._state is TrackingState.ERROR:
                msg = "Tracking is in error state; stop it before starting again"
                raise TrackerError(msg)
            try:
                settings.require_complete()
            except ConfigError as e:
                self.emitter.emit_log("error", f"Cannot start tracking: {e}")
                raise

            self._pipeline = self.pipeline_factory(settings)
            self.session = TrackingSession(
                settings=settings,
                started_at=self._wall_clock(),
                started_mono=self._clock(),
            )
            self._transition(
                TrackingState.TRACKING,
                "success",
                f"Tracking started (interval: {settings.interval_seconds}s)",
            )
            self._start_timer(settings.interval_seconds, self._clock())
            return self.session

    def stop_tracking(self) -> None:
        """タイマーを止める. 実行中のパイプラインは最後まで走らせる."""
        with self._lock:
            if self._state in (TrackingState.TRACKING, TrackingState.PAUSED):
                self._cancel_timer()
                self._end_session()
                self._transition(TrackingState.STOPPED, "info", "Tracking stopped")
            elif self._state is TrackingState.ERROR:
                self._cancel_timer()
                self._end_session()
                self._transition(
                    TrackingState.IDLE, "info", "Tracking reset after error"
                )
            else:
                self.emitter.emit_log("info", "Tracking is not running")

    def pause_tracking(self) -> None:
        with self._lock:
            if self._state is not TrackingState.TRACKING:
                msg = f"Cannot pause while {self._state.value}"
                raise TrackerError(msg)
            self._cancel_timer()
            self._transition(TrackingState.PAUSED, "info", "Tracking paused")

    def resume_tracking(self) -> None:
        with self._lock:
            if self._state is not TrackingState.PAUSED or self.session is None:
                msg = f"Cannot resume while {self._state.value}"
                raise TrackerError(msg)
            interval = self.session.settings.interval_seconds
            last = self.session.last_tick_mono
            # 一時停止前の tick から間隔を空ける
            first_at = self._clock() if last is None else last + interval
            self._transition(TrackingState.TRACKING, "info", "Tracking resumed")
            self._start_timer(interval, first_at)

    # ------------------------------------------------------------------
    # Ticks
    def tick(self, at: float | None = None) -> "Future[RunOutcome] | None":
        """パイプラインを1回起動する. 実行中なら何もせず None を返す.

        Args:
            at: モノトニック時計での撮影時刻. 省略時は現在時刻

        """
        with self._lock:
            session = self.session
            pipeline = self._pipeline
            if self._state is not TrackingState.TRACKING or session is None or pipeline is None:
                return None
            if self._busy:
                self.emitter.emit_log(
                    "warning", "Previous capture still running, tick skipped"
                )
                return None

            now = self._clock() if at is None else at
            session.last_tick_mono = now
            session.last_tick_at = session.wall_time(now)
            self._busy = True
            future = self._executor.submit(
                self._execute, session, pipeline, session.last_tick_at
            )
            self._current = future
            return future

    def _execute(
        self, session: TrackingSession, pipeline: Pipeline, captured_at: float
    ) -> RunOutcome:
        try:
            outcome = pipeline.run(captured_at)
        except Exception as e:
            logger.exception("Pipeline run failed")
            self.emitter.emit_log("error", f"Pipeline run failed: {e}")
            outcome = RunOutcome(counted_failure=True, reason="unexpected_error")

        with self._lock:
            self._busy = False
            self._record_outcome(session, outcome)
        return outcome

    def _record_outcome(self, session: TrackingSession, outcome: RunOutcome) -> None:
        if session is not self.session or self._state not in (
            TrackingState.TRACKING,
            TrackingState.PAUSED,
        ):
            return

        if outcome.fatal:
            session.consecutive_failures = max(
                session.consecutive_failures + 1, self.failure_threshold
            )
        elif outcome.counted_failure:
            session.consecutive_failures += 1
        elif outcome.event is not None:
            session.consecutive_failures = 0
            return
        else:
            return

        if session.consecutive_failures >= self.failure_threshold:
            self._cancel_timer()
            self._transition(
                TrackingState.ERROR,
                "error",
                f"Tracking halted after {session.consecutive_failures} "
                f"consecutive failures ({outcome.reason}); stop tracking and "
                "check the configuration",
            )
        else:
            logger.warning(
                "Pipeline failure %s/%s (%s)",
                session.consecutive_failures,
                self.failure_threshold,
                outcome.reason,
            )

    def wait_idle(self, timeout: float | None = None) -> RunOutcome | None:
        """実行中のパイプラインがあれば終わるまで待つ."""
        with self._lock:
            current = self._current
        if current is None:
            return None
        return current.result(timeout=timeout)

    def after_idle(self, callback: Callable[[], None]) -> None:
        """実行中のパイプラインが終わってから callback を呼ぶ. 暇ならすぐ呼ぶ."""
        with self._lock:
            current = self._current
        if current is None:
            callback()
        else:
            current.add_done_callback(lambda _future: callback())

    # ------------------------------------------------------------------
    # Internals
    def _transition(self, state: TrackingState, level: str, message: str) -> None:
        previous = self._state
        self._state = state
        if self.session is not None:
            self.session.state = state
        logger.info("State %s -> %s", previous.value, state.value)
        self.emitter.emit_status(state.value)
        self.emitter.emit_log(level, message)

    def _end_session(self) -> None:
        self.session = None
        self._pipeline = None

    def _start_timer(self, interval: float, first_at: float) -> None:
        stop = threading.Event()
        self._timer_stop = stop
        if not self.run_timer:
            return
        threading.Thread(
            target=self._timer_loop,
            args=(stop, float(interval), first_at),
            name="capture-timer",
            daemon=True,
        ).start()

    def _cancel_timer(self) -> None:
        if self._timer_stop is not None:
            self._timer_stop.set()
            self._timer_stop = None

    def _timer_loop(
        self, stop: threading.Event, interval: float, first_at: float
    ) -> None:
        next_at = first_at
        while not stop.wait(max(0.0, next_at - self._clock())):
            tick_at = self._clock()
            if tick_at < next_at:
                # wait が早く戻った
                continue
            with self._lock:
                if stop.is_set():
                    break
                self.tick(tick_at)
            # 次の tick は実際の tick 時刻から数える
            next_at = tick_at + interval

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._state not in (TrackingState.IDLE, TrackingState.STOPPED):
                self.stop_tracking()
        self._executor.shutdown(wait=wait)
