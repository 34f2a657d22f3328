"""Agent facade: wires the components together and serves the UI commands."""

from collections.abc import Callable
from typing import Any

from tracker_agent.config import AgentConfig, Settings, SettingsStore
from tracker_agent.logger import logger
from tracker_agent.model.models import SyncKind, TrackingState
from tracker_agent.pipeline.correlator import TaskCorrelator
from tracker_agent.pipeline.ocr import OcrEngine, TesseractOcr
from tracker_agent.pipeline.runner import Capture, Pipeline
from tracker_agent.pipeline.segments import SegmentTracker
from tracker_agent.scheduler import CaptureScheduler
from tracker_agent.services.classifier import ActivityClassifier, Classifier
from tracker_agent.services.emitter import EventEmitter
from tracker_agent.services.task_service import TaskServiceClient
from tracker_agent.storage.event_store import EventLog, EventStore, SyncQueue
from tracker_agent.storage.sync_worker import SyncWorker
from tracker_agent.watchers.active_window import get_active_application
from tracker_agent.watchers.screen_capture import ScreenCapture


class TrackerAgent:
    """start_tracking / stop_tracking / save_settings を提供する."""

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        emitter: EventEmitter | None = None,
        capture: Capture | None = None,
        ocr_engine: OcrEngine | None = None,
        classifier_factory: Callable[[Settings], ActivityClassifier] | None = None,
        task_client_factory: Callable[[Settings], TaskServiceClient] | None = None,
        application_hint: Callable[[], str | None] | None = get_active_application,
        run_timer: bool = True,
    ) -> None:
        self.config = config or AgentConfig()
        self.emitter = emitter or EventEmitter()
        self.settings_store = SettingsStore(self.config.settings_path)

        self.capture = capture or ScreenCapture()
        self.ocr_engine = ocr_engine or TesseractOcr()
        self.classifier_factory = classifier_factory or self._default_classifier
        self.task_client_factory = task_client_factory or self._default_task_client
        self.application_hint = application_hint

        self.store = EventStore(self.config.db_path)
        self.event_log = EventLog(self.store)
        self.sync_queue = SyncQueue(self.store)
        self.sync_worker = SyncWorker(self.sync_queue, self.event_log, emitter=self.emitter)
        self.correlator = TaskCorrelator(
            similarity_floor=self.config.correlation_floor,
            cache_ttl=self.config.task_cache_ttl,
        )
        self.segments = SegmentTracker()
        self.scheduler = CaptureScheduler(
            self._build_pipeline,
            self.emitter,
            self.config.failure_threshold,
            run_timer=run_timer,
        )

    # ------------------------------------------------------------------
    # Factories
    def _default_classifier(self, settings: Settings) -> ActivityClassifier:
        return Classifier(
            api_key=settings.ai_api_key,
            base_url=self.config.llm_url,
            model_name=self.config.llm_model,
            timeout=self.config.llm_timeout,
            confidence_floor=self.config.classifier_confidence_floor,
        )

    def _default_task_client(self, settings: Settings) -> TaskServiceClient:
        return TaskServiceClient(
            email=settings.task_service_email,
            api_key=settings.task_service_key,
            base_url=self.config.task_service_url,
            timeout=self.config.task_service_timeout,
        )

    def _build_pipeline(self, settings: Settings) -> Pipeline:
        task_client = self.task_client_factory(settings)
        self.correlator.clear()
        # セッションごとに作り直す. 前のセッションの close と混ざらない
        self.segments = SegmentTracker()
        self.sync_worker.set_sink(task_client)
        return Pipeline(
            capture=self.capture,
            ocr_engine=self.ocr_engine,
            classifier=self.classifier_factory(settings),
            correlator=self.correlator,
            event_log=self.event_log,
            emitter=self.emitter,
            task_source=task_client,
            segments=self.segments,
            application_hint=self.application_hint,
            on_event=lambda _event: self.sync_worker.wake(),
            timer_queue=self.sync_queue if self.config.time_tracking else None,
            ocr_timeout=self.config.ocr_timeout,
            ocr_confidence_floor=self.config.ocr_confidence_floor,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def settings(self) -> Settings:
        return self.settings_store.load()

    def startup(self) -> None:
        """保存済みの設定があれば未配信イベントの同期を再開する.

        前回のプロセスが止めずに終わったタイマーは停止を積み直す.
        """
        settings = self.settings
        self._stop_orphaned_timers()
        if not settings.missing_fields():
            self.sync_worker.set_sink(self.task_client_factory(settings))
        self.sync_worker.start()
        pending = len(self.sync_queue)
        if pending:
            self.emitter.emit_log("info", f"Resuming delivery of {pending} queued events")

    def _stop_orphaned_timers(self) -> None:
        started = [
            item.event_id
            for item in self.sync_queue.pending()
            if item.kind is SyncKind.TIMER_START
        ]
        orphaned = self.sync_worker.time_entries.running() + started
        added = self.sync_queue.enqueue(
            *[(SyncKind.TIMER_STOP, event_id) for event_id in orphaned]
        )
        if added:
            logger.warning("Queued stop for %s timers left running", added)

    def shutdown(self) -> None:
        if self.scheduler.state in (TrackingState.TRACKING, TrackingState.PAUSED):
            self.stop_tracking()
        self.scheduler.shutdown()
        self.sync_worker.stop()
        logger.info("Agent shut down (%s events pending)", len(self.sync_queue))

    # ------------------------------------------------------------------
    # UI commands
    def start_tracking(self) -> None:
        self.scheduler.start_tracking(self.settings)
        self.sync_worker.start()

    def stop_tracking(self) -> None:
        segments = self.segments
        self.scheduler.stop_tracking()
        self.scheduler.after_idle(lambda: self._close_segment(segments))

    def pause_tracking(self) -> None:
        """一時停止. 止まっている間はリモートのタイマーも止める."""
        segments = self.segments
        self.scheduler.pause_tracking()
        self.scheduler.after_idle(lambda: self._close_segment(segments))

    def _close_segment(self, segments: SegmentTracker) -> None:
        segment = segments.close()
        if segment is None or not self.config.time_tracking:
            return
        self.sync_queue.enqueue((SyncKind.TIMER_STOP, segment.event_id))
        self.sync_worker.wake()

    def resume_tracking(self) -> None:
        self.scheduler.resume_tracking()

    def save_settings(self, data: dict[str, Any] | Settings) -> Settings:
        """設定を検証して保存する. 次のセッション開始時に反映される.

        Raises:
            pydantic.ValidationError: 不正な値

        """
        settings = (
            data if isinstance(data, Settings) else Settings.model_validate(data)
        )
        self.settings_store.save(settings)
        self.emitter.emit_log(
            "success", f"Settings saved (interval: {settings.interval_seconds}s)"
        )
        return settings

    def status(self) -> dict[str, Any]:
        session = self.scheduler.session
        return {
            "state": self.scheduler.state.value,
            "busy": self.scheduler.busy,
            "started_at": session.started_at if session else None,
            "last_tick_at": session.last_tick_at if session else None,
            "consecutive_failures": session.consecutive_failures if session else 0,
            "events_logged": len(self.event_log),
            "sync_pending": len(self.sync_queue),
            "tasks_cached": len(self.correlator.tasks),
            "tracking": self.emitter.last_tracking_update,
        }
