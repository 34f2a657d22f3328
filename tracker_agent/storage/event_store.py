"""Local Event Log, durable Sync Queue and remote timer entries.

All three live in one SQLite file so that appending an event and enqueueing
it for delivery happen in a single transaction.  Queue rows survive
restarts; a new ``SyncWorker`` resumes delivery from the oldest row.
"""

from __future__ import annotations

import dataclasses
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from tracker_agent.logger import logger
from tracker_agent.model.models import ActivityEvent, SyncKind, SyncQueueItem, TaskRef


def _ensure_parent(path: Path) -> None:
    """Create the parent directory for *path* if it does not exist."""

    path.parent.mkdir(parents=True, exist_ok=True)


class EventStore:
    """Wrapper around the SQLite file shared by the log and the queue."""

    def __init__(self, db_path: Path | str):
        self.path = Path(db_path).expanduser()
        _ensure_parent(self.path)
        # 書き込みは1本に直列化する
        self.write_lock = threading.Lock()
        self._initialise()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _initialise(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    timestamp REAL NOT NULL,
                    application_hint TEXT NOT NULL,
                    activity_label TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    task_id TEXT,
                    task_title TEXT,
                    text_excerpt TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL REFERENCES events(id),
                    kind TEXT NOT NULL DEFAULT 'activity',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_at REAL NOT NULL DEFAULT 0,
                    UNIQUE (kind, event_id)
                )
                """
            )
            # セグメントを開いたイベントごとのリモートのタイマー
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS time_entries (
                    event_id TEXT PRIMARY KEY REFERENCES events(id),
                    remote_id TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    stopped_at REAL
                )
                """
            )


def _row_to_event(row: sqlite3.Row) -> ActivityEvent:
    task = (
        TaskRef(id=row["task_id"], title=row["task_title"] or "")
        if row["task_id"] is not None
        else None
    )
    return ActivityEvent(
        id=row["id"],
        timestamp=row["timestamp"],
        application_hint=row["application_hint"],
        activity_label=row["activity_label"],
        confidence=row["confidence"],
        matched_task=task,
        text_excerpt=row["text_excerpt"],
    )


def _row_to_item(row: sqlite3.Row) -> SyncQueueItem:
    return SyncQueueItem(
        seq=row["seq"],
        event_id=row["event_id"],
        kind=SyncKind(row["kind"]),
        attempt_count=row["attempt_count"],
        next_retry_at=row["next_retry_at"],
    )


class EventLog:
    """追記専用のイベントログ. append が唯一の書き込み経路."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    def last_timestamp(self) -> float | None:
        with self.store.connect() as conn:
            row = conn.execute("SELECT MAX(timestamp) AS ts FROM events").fetchone()
        return row["ts"] if row else None

    def append(self, event: ActivityEvent) -> ActivityEvent:
        """イベントを記録し、同じトランザクションで同期キューに積む.

        タイムスタンプが直前のイベントより古い場合は直前の値に揃える.
        同じIDのイベントは2回目以降無視される.
        """
        with self.store.write_lock, self.store.connect() as conn:
            row = conn.execute("SELECT MAX(timestamp) AS ts FROM events").fetchone()
            last = row["ts"] if row else None
            if last is not None and event.timestamp < last:
                logger.warning(
                    "Event timestamp %.3f precedes last %.3f, clamping",
                    event.timestamp,
                    last,
                )
                event = dataclasses.replace(event, timestamp=last)

            task = event.matched_task
            conn.execute(
                """
                INSERT OR IGNORE INTO events (
                    id, timestamp, application_hint, activity_label,
                    confidence, task_id, task_title, text_excerpt
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.timestamp,
                    event.application_hint,
                    event.activity_label,
                    event.confidence,
                    task.id if task else None,
                    task.title if task else None,
                    event.text_excerpt,
                ),
            )
            conn.execute(
                "INSERT OR IGNORE INTO sync_queue (event_id) VALUES (?)", (event.id,)
            )
        return event

    def get(self, event_id: str) -> ActivityEvent | None:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def recent(self, limit: int = 20) -> list[ActivityEvent]:
        """新しい順ではなく時刻順で直近のイベントを返す."""
        with self.store.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT rowid AS rid, * FROM events
                    ORDER BY timestamp DESC, rid DESC LIMIT ?
                ) ORDER BY timestamp ASC, rid ASC
                """,
                (limit,),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def __len__(self) -> int:
        with self.store.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM events").fetchone()
        return int(row["n"])


class SyncQueue:
    """リモート配信待ちのFIFOキュー. 確認応答があるまで削除しない."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    def head(self) -> SyncQueueItem | None:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue ORDER BY seq ASC LIMIT 1"
            ).fetchone()
        return _row_to_item(row) if row else None

    def pending(self) -> list[SyncQueueItem]:
        with self.store.connect() as conn:
            rows = conn.execute("SELECT * FROM sync_queue ORDER BY seq ASC").fetchall()
        return [_row_to_item(row) for row in rows]

    def enqueue(self, *actions: tuple[SyncKind, str]) -> int:
        """(種類, イベントID) の操作を順に積む. 積んだ件数を返す.

        同じ種類とイベントIDの組は1回しか積まれない.
        """
        added = 0
        with self.store.write_lock, self.store.connect() as conn:
            for kind, event_id in actions:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO sync_queue (event_id, kind) VALUES (?, ?)",
                    (event_id, kind.value),
                )
                added += cursor.rowcount
        return added

    def mark_delivered(self, seq: int) -> None:
        with self.store.write_lock, self.store.connect() as conn:
            conn.execute("DELETE FROM sync_queue WHERE seq = ?", (seq,))

    def mark_failed(self, seq: int, next_retry_at: float) -> SyncQueueItem | None:
        """試行回数を増やし、次回の再試行時刻を記録する."""
        with self.store.write_lock, self.store.connect() as conn:
            conn.execute(
                """
                UPDATE sync_queue
                SET attempt_count = attempt_count + 1, next_retry_at = ?
                WHERE seq = ?
                """,
                (next_retry_at, seq),
            )
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE seq = ?", (seq,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def __len__(self) -> int:
        with self.store.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
        return int(row["n"])


class TimeEntries:
    """開始済みのリモートのタイマー. 停止にはリモート側のIDが要る."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    def opened(self, event_id: str, remote_id: str, started_at: float) -> None:
        with self.store.write_lock, self.store.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO time_entries (event_id, remote_id, started_at)
                VALUES (?, ?, ?)
                """,
                (event_id, remote_id, started_at),
            )

    def closed(self, event_id: str, stopped_at: float) -> None:
        with self.store.write_lock, self.store.connect() as conn:
            conn.execute(
                "UPDATE time_entries SET stopped_at = ? WHERE event_id = ?",
                (stopped_at, event_id),
            )

    def remote_id(self, event_id: str) -> str | None:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT remote_id FROM time_entries WHERE event_id = ?", (event_id,)
            ).fetchone()
        return row["remote_id"] if row else None

    def running(self) -> list[str]:
        """停止していないタイマーのイベントID."""
        with self.store.connect() as conn:
            rows = conn.execute(
                "SELECT event_id FROM time_entries WHERE stopped_at IS NULL "
                "ORDER BY started_at ASC"
            ).fetchall()
        return [row["event_id"] for row in rows]
