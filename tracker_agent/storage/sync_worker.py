"""Background delivery of queued events and timer actions to the task service."""

import threading
import time
from collections.abc import Callable

from tracker_agent.logger import logger
from tracker_agent.model.errors import SyncFailure
from tracker_agent.model.models import ActivityEvent, SyncKind, SyncQueueItem
from tracker_agent.services.emitter import EventEmitter
from tracker_agent.services.task_service import ActivitySink
from tracker_agent.storage.event_store import EventLog, SyncQueue, TimeEntries

BACKOFF_BASE = 2.0
BACKOFF_CAP = 300.0
IDLE_POLL_INTERVAL = 5.0


def backoff_delay(
    attempt_count: int, base: float = BACKOFF_BASE, cap: float = BACKOFF_CAP
) -> float:
    """attempt_count 回失敗した後の待ち時間(秒). 指数的に伸び cap で頭打ち."""
    if attempt_count <= 0:
        return 0.0
    return min(cap, base * 2 ** (attempt_count - 1))


class SyncWorker:
    """同期キューの先頭から順に配信するワーカー.

    先頭が失敗している間は後続を送らない（順序を保つ）.
    停止しても未配信の項目はSQLiteに残り、次回起動時に再開される.
    """

    def __init__(
        self,
        sync_queue: SyncQueue,
        event_log: EventLog,
        sink: ActivitySink | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], float] = time.time,
        backoff: Callable[[int], float] = backoff_delay,
        time_entries: TimeEntries | None = None,
    ) -> None:
        self.queue = sync_queue
        self.event_log = event_log
        self.time_entries = time_entries or TimeEntries(sync_queue.store)
        self.emitter = emitter
        self._sink = sink
        self._clock = clock
        self._backoff = backoff
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    def set_sink(self, sink: ActivitySink | None) -> None:
        with self._lock:
            self._sink = sink
        self.wake()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wake(self) -> None:
        """新しいイベントが積まれたことを知らせる."""
        self._wake.set()

    def _log(self, level: str, message: str) -> None:
        if self.emitter is not None:
            self.emitter.emit_log(level, message)
        else:
            logger.info("%s: %s", level.upper(), message)

    def _fail(self, item: SyncQueueItem, level: str, error: Exception) -> None:
        attempts = item.attempt_count + 1
        delay = self._backoff(attempts)
        self.queue.mark_failed(item.seq, self._clock() + delay)
        self._log(
            level,
            f"Sync failed for {item.kind.value} {item.event_id[:8]} "
            f"(attempt {attempts}, retry in {delay:.0f}s): {error}",
        )

    def _send(self, sink: ActivitySink, item: SyncQueueItem, event: ActivityEvent) -> None:
        if item.kind is SyncKind.ACTIVITY:
            sink.record_activity(event)
            logger.info("Delivered event %s", item.event_id)
        elif item.kind is SyncKind.TIMER_START:
            remote_id = sink.start_time_tracking(event)
            self.time_entries.opened(event.id, remote_id, self._clock())
            task = event.matched_task.title if event.matched_task else "general work"
            self._log("success", f"Time tracking started: {task}")
        else:
            remote_id = self.time_entries.remote_id(event.id)
            if remote_id is None:
                # 開始できなかったタイマーは止めるものがない
                logger.warning("No running timer for segment %s", event.id)
                return
            sink.stop_time_tracking(remote_id)
            self.time_entries.closed(event.id, self._clock())
            self._log("info", "Time tracking stopped")

    def _deliver(self, sink: ActivitySink, item: SyncQueueItem) -> bool:
        event = self.event_log.get(item.event_id)
        if event is None:
            logger.error("Queued event %s missing from the log", item.event_id)
            self.queue.mark_delivered(item.seq)
            return True
        try:
            self._send(sink, item, event)
        except SyncFailure as e:
            self._fail(item, "warning", e)
            return False
        except Exception as e:
            logger.exception("Unexpected error delivering %s", item.event_id)
            self._fail(item, "error", e)
            return False
        self.queue.mark_delivered(item.seq)
        return True

    def deliver_due(self) -> int:
        """再試行時刻に達した先頭から順に配信する. 配信できた件数を返す."""
        with self._lock:
            sink = self._sink
        if sink is None:
            return 0

        delivered = 0
        while not self._stop.is_set():
            item = self.queue.head()
            if item is None or item.next_retry_at > self._clock():
                break
            if not self._deliver(sink, item):
                break
            delivered += 1
        return delivered

    def seconds_until_due(self) -> float | None:
        item = self.queue.head()
        if item is None:
            return None
        return max(0.0, item.next_retry_at - self._clock())

    def _run(self) -> None:
        logger.info("Sync worker started (%s pending)", len(self.queue))
        while not self._stop.is_set():
            self._wake.clear()
            try:
                self.deliver_due()
            except Exception:
                logger.exception("Sync worker pass failed")
            wait = self.seconds_until_due()
            if wait is None or self._sink is None:
                wait = IDLE_POLL_INTERVAL
            self._wake.wait(timeout=max(0.05, min(wait, IDLE_POLL_INTERVAL)))
        logger.info("Sync worker stopped (%s pending)", len(self.queue))

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="sync-worker", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        """ループを止める. 未配信の項目はキューに残る."""
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
