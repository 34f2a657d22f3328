"""Match an activity sample against the cached task snapshot."""

import threading
import time
from collections.abc import Callable, Sequence

from tracker_agent.logger import logger
from tracker_agent.model.models import UNKNOWN_LABEL, TaskRecord, TaskRef
from tracker_agent.pipeline.text_matching import (
    jaccard_similarity,
    matched_keywords,
    normalize_text,
)
from tracker_agent.services.task_service import TaskSource

SIMILARITY_FLOOR = 0.30
CACHE_TTL = 900.0
REFRESH_RETRY_INTERVAL = 60.0

TITLE_WEIGHT = 0.5
DESCRIPTION_WEIGHT = 0.2
KEYWORD_WEIGHT = 0.3


def score_task(normalized_text: str, task: TaskRecord) -> float:
    """タイトル・説明との類似度とキーワード一致から0..1のスコアを出す."""
    title = normalize_text(task.title)
    context = normalize_text(f"{task.description} {task.project_name}")

    title_similarity = jaccard_similarity(normalized_text, title) if title else 0.0
    context_similarity = (
        jaccard_similarity(normalized_text, context) if context else 0.0
    )

    title_words = title.split()
    keywords = matched_keywords(normalized_text, title)
    keyword_ratio = len(keywords) / len(title_words) if title_words else 0.0

    return (
        TITLE_WEIGHT * title_similarity
        + DESCRIPTION_WEIGHT * context_similarity
        + KEYWORD_WEIGHT * keyword_ratio
    )


class TaskCorrelator:
    """タスクのキャッシュを保持し、テキストに最も近いタスクを選ぶ."""

    def __init__(
        self,
        similarity_floor: float = SIMILARITY_FLOOR,
        cache_ttl: float = CACHE_TTL,
        retry_interval: float = REFRESH_RETRY_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.similarity_floor = similarity_floor
        self.cache_ttl = cache_ttl
        self.retry_interval = retry_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: tuple[TaskRecord, ...] = ()
        self._refreshed_at: float | None = None
        self._attempted_at: float | None = None

    @property
    def tasks(self) -> tuple[TaskRecord, ...]:
        with self._lock:
            return self._tasks

    def is_stale(self) -> bool:
        with self._lock:
            return (
                self._refreshed_at is None
                or self._clock() - self._refreshed_at > self.cache_ttl
            )

    def replace(self, tasks: Sequence[TaskRecord]) -> None:
        with self._lock:
            self._tasks = tuple(tasks)
            self._refreshed_at = self._clock()

    def clear(self) -> None:
        with self._lock:
            self._tasks = ()
            self._refreshed_at = None
            self._attempted_at = None

    def refresh(self, source: TaskSource) -> int:
        """タスク一覧を取り直す. 失敗時は TaskServiceError をそのまま送出."""
        with self._lock:
            self._attempted_at = self._clock()
        tasks = source.fetch_tasks()
        self.replace(tasks)
        return len(tasks)

    def refresh_if_stale(self, source: TaskSource) -> bool:
        """期限切れなら取り直す. 失敗後は retry_interval の間は再試行しない.

        Raises:
            TaskServiceError: 取得に失敗した. キャッシュは前のまま

        """
        with self._lock:
            now = self._clock()
            fresh = (
                self._refreshed_at is not None
                and now - self._refreshed_at <= self.cache_ttl
            )
            recently_tried = (
                self._attempted_at is not None
                and now - self._attempted_at <= self.retry_interval
            )
        if fresh or recently_tried:
            return False
        count = self.refresh(source)
        logger.info("Task cache refreshed (%s tasks)", count)
        return True

    def correlate(self, activity_label: str, text: str) -> TaskRef | None:
        """最もスコアの高いタスクを返す. しきい値以下やキャッシュ切れは None."""
        if self.is_stale():
            return None
        tasks = self.tasks
        if not tasks:
            return None

        label = "" if activity_label == UNKNOWN_LABEL else activity_label
        normalized = normalize_text(f"{text} {label}")
        if not normalized:
            return None

        best: TaskRecord | None = None
        best_score = 0.0
        for task in tasks:
            score = score_task(normalized, task)
            if score > 0.1:
                logger.debug("Task '%s': score=%.2f", task.title, score)
            if best is None or score > best_score or (
                score == best_score and task.updated_at > best.updated_at
            ):
                best, best_score = task, score

        if best is None or best_score <= self.similarity_floor:
            return None
        logger.info("Matched task '%s' (score %.0f%%)", best.title, best_score * 100)
        return best.ref()
