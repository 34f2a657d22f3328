"""Agent configuration.

Two layers:

* ``AgentConfig`` holds deployment knobs (paths, service URLs, timeouts and
  thresholds).  Values come from environment variables, optionally loaded from
  ``.env.local`` in the working directory.
* ``Settings`` is the user-editable record saved from the UI (capture interval
  and credentials).  ``SettingsStore`` persists it as JSON.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tracker_agent.model.errors import ConfigError

REQUIRED_FIELDS = ("ai_api_key", "task_service_email", "task_service_key")


def load_local_env(path: Path | str = ".env.local") -> None:
    """``.env.local`` を環境変数に読み込む（存在する場合のみ）."""
    load_dotenv(dotenv_path=Path(path), override=True)


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    """UIから保存されるユーザー設定."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    interval_seconds: int = Field(default=60, ge=1, alias="interval")
    ai_api_key: str = ""
    task_service_email: str = ""
    task_service_key: str = ""

    @field_validator("ai_api_key", "task_service_email", "task_service_key")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()

    @field_validator("task_service_email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        """空でなければ@を含むこと."""
        if v and "@" not in v:
            msg = "task_service_email must be an e-mail address"
            raise ValueError(msg)
        return v

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def require_complete(self) -> None:
        """必須項目が空なら ConfigError."""
        missing = self.missing_fields()
        if missing:
            raise ConfigError(missing)

    def masked(self) -> dict[str, object]:
        """UI表示用. キーは末尾4文字だけ残す."""

        def mask(value: str) -> str:
            return f"***{value[-4:]}" if value else ""

        return {
            "interval": self.interval_seconds,
            "ai_api_key": mask(self.ai_api_key),
            "task_service_email": self.task_service_email,
            "task_service_key": mask(self.task_service_key),
        }


class SettingsStore:
    """Settings をJSONファイルに保存・読み込みする."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Settings:
        if not self.path.exists():
            return Settings()
        with self.path.open(encoding="utf-8") as f:
            return Settings.model_validate(json.load(f))

    def save(self, settings: Settings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps(settings.model_dump(by_alias=True), indent=2), encoding="utf-8"
        )
        tmp.replace(self.path)


@dataclass
class AgentConfig:
    """環境変数で上書きできるエージェントの設定値.

    - TRACKER_DATA_DIR: 設定ファイルとSQLiteの置き場所
    - LLM_URL / LLM_MODEL: OpenAI互換APIのベースURLとモデル名
    - TASK_SERVICE_URL: タスクサービスのベースURL
    - OCR_TIMEOUT / LLM_TIMEOUT / TASK_SERVICE_TIMEOUT: 各タイムアウト(秒)
    - TIME_TRACKING: 0 ならタスクサービスのタイマーを操作しない
    """

    data_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("TRACKER_DATA_DIR", "~/.tracker_agent")
        ).expanduser()
    )
    llm_url: str = field(
        default_factory=lambda: os.getenv("LLM_URL", "https://openrouter.ai/api/v1")
    )
    llm_model: str = field(
        default_factory=lambda: os.getenv("LLM_MODEL", "google/gemini-2.5-flash")
    )
    task_service_url: str = field(
        default_factory=lambda: os.getenv(
            "TASK_SERVICE_URL", "https://api.freelo.io/v1"
        )
    )
    ocr_timeout: float = field(default_factory=lambda: _env_float("OCR_TIMEOUT", 30.0))
    llm_timeout: float = field(default_factory=lambda: _env_float("LLM_TIMEOUT", 20.0))
    task_service_timeout: float = field(
        default_factory=lambda: _env_float("TASK_SERVICE_TIMEOUT", 15.0)
    )
    ocr_confidence_floor: float = 0.40
    classifier_confidence_floor: float = 0.40
    correlation_floor: float = 0.30
    failure_threshold: int = 3
    task_cache_ttl: float = 900.0
    time_tracking: bool = field(
        default_factory=lambda: os.getenv("TIME_TRACKING", "1").strip().lower()
        not in ("0", "false", "no")
    )

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "tracker.db"
