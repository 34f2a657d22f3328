"""Client for the remote task-management service (Freelo-style REST API)."""

from datetime import datetime
from typing import Any, Protocol

import requests

from tracker_agent.logger import logger
from tracker_agent.model.errors import SyncFailure, TaskServiceError
from tracker_agent.model.models import ActivityEvent, TaskRecord

HTTP_OK_MIN = 200
HTTP_OK_MAX = 300
USER_AGENT = "TrackerAgent/1.0"


class TaskSource(Protocol):
    def fetch_tasks(self) -> list[TaskRecord]: ...


class ActivitySink(Protocol):
    def record_activity(self, event: ActivityEvent) -> None: ...

    def start_time_tracking(self, event: ActivityEvent) -> str: ...

    def stop_time_tracking(self, remote_id: str) -> None: ...


def time_tracking_note(event: ActivityEvent) -> str:
    """タイマーに付けるメモ. AIが付けたことが分かるようにする."""
    return f"AI: {event.activity_label} ({event.application_hint})"


def _parse_timestamp(value: object) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0
    return 0.0


def parse_task(raw: dict[str, Any]) -> TaskRecord:
    """APIのタスク1件を TaskRecord に変換."""
    project = raw.get("project") or {}
    return TaskRecord(
        id=str(raw["id"]),
        title=str(raw.get("name") or raw.get("title") or "").strip(),
        description=str(raw.get("description") or "").strip(),
        project_name=str(project.get("name") or "").strip(),
        updated_at=_parse_timestamp(raw.get("date_edited_at") or raw.get("updated_at")),
    )


class TaskServiceClient:
    """タスク一覧の取得、アクティビティの記録とタイマー操作を行うクライアント."""

    def __init__(
        self,
        email: str,
        api_key: str,
        base_url: str = "https://api.freelo.io/v1",
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (email, api_key)
        self.session.headers.update({"User-Agent": USER_AGENT})

    def fetch_tasks(self) -> list[TaskRecord]:
        """自分の未完了タスク一覧を取得.

        Raises:
            TaskServiceError: 通信エラーまたはHTTPエラー

        """
        url = f"{self.base_url}/all-tasks"
        try:
            response = self.session.get(
                url,
                params={"states_ids[]": 1, "limit": 100},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TaskServiceError(f"HTTP error: {e}") from e

        status_code = int(getattr(response, "status_code", 0))
        if not HTTP_OK_MIN <= status_code < HTTP_OK_MAX:
            raise TaskServiceError(
                f"Task service error {status_code}", status_code=status_code
            )

        try:
            raw_tasks = response.json()["data"]["tasks"]
        except (ValueError, KeyError, TypeError) as e:
            raise TaskServiceError(f"JSON parse error: {e}") from e

        tasks = [parse_task(raw) for raw in raw_tasks if raw.get("id") is not None]
        logger.info("Fetched %s tasks", len(tasks))
        return tasks

    def record_activity(self, event: ActivityEvent) -> None:
        """アクティビティを記録. イベントIDを冪等キーとして送る.

        Raises:
            SyncFailure: 通信エラーまたは2xx以外

        """
        self._post(
            "/activities",
            event.sync_payload(),
            headers={"Idempotency-Key": event.id},
        )

    def _post(self, path: str, body: dict[str, Any], **kwargs: Any) -> requests.Response:
        try:
            response = self.session.post(
                f"{self.base_url}{path}", json=body, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise SyncFailure(f"HTTP error: {e}") from e

        status_code = int(getattr(response, "status_code", 0))
        if not HTTP_OK_MIN <= status_code < HTTP_OK_MAX:
            raise SyncFailure(
                f"Task service error {status_code} on {path}", status_code=status_code
            )
        return response

    def start_time_tracking(self, event: ActivityEvent) -> str:
        """イベントのタスク（なければ一般作業）でタイマーを開始し、UUIDを返す.

        Raises:
            SyncFailure: 通信エラー、2xx以外、またはUUIDのない応答

        """
        body: dict[str, Any] = {"note": time_tracking_note(event)}
        if event.matched_task is not None:
            body["task_id"] = event.matched_task.id
        response = self._post(
            "/timetracking/start", body, headers={"Idempotency-Key": event.id}
        )
        try:
            data = response.json()
            remote_id = data.get("uuid") or (data.get("data") or {}).get("uuid")
        except (ValueError, AttributeError) as e:
            raise SyncFailure(f"JSON parse error: {e}") from e
        if not remote_id:
            msg = "Time tracking start response has no uuid"
            raise SyncFailure(msg)
        logger.info("Time tracking started (%s)", remote_id)
        return str(remote_id)

    def stop_time_tracking(self, remote_id: str) -> None:
        """UUIDで指定したタイマーを止める.

        Raises:
            SyncFailure: 通信エラーまたは2xx以外

        """
        self._post("/timetracking/stop", {"uuid": remote_id})
        logger.info("Time tracking stopped (%s)", remote_id)
