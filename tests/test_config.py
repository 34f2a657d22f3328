import json

import pytest
from pydantic import ValidationError

from tracker_agent.config import AgentConfig, Settings, SettingsStore, load_local_env
from tracker_agent.model.errors import ConfigError


class TestSettings:
    """ユーザー設定の検証テスト"""

    def test_defaults(self):
        settings = Settings()
        assert settings.interval_seconds == 60
        assert settings.missing_fields() == [
            "ai_api_key",
            "task_service_email",
            "task_service_key",
        ]

    def test_interval_alias(self):
        """UIから送られる interval キーで設定できる"""
        assert Settings(interval=15).interval_seconds == 15
        assert Settings(interval_seconds=20).interval_seconds == 20

    @pytest.mark.parametrize("interval", [0, -5])
    def test_interval_must_be_positive(self, interval):
        with pytest.raises(ValidationError):
            Settings(interval=interval)

    def test_invalid_email_rejected(self):
        with pytest.raises(ValidationError):
            Settings(task_service_email="not-an-email")

    def test_whitespace_is_stripped(self):
        settings = Settings(ai_api_key="  sk-abc  ")
        assert settings.ai_api_key == "sk-abc"
        assert "ai_api_key" not in settings.missing_fields()

    def test_require_complete_lists_missing_fields(self):
        """空の必須項目は ConfigError に列挙される"""
        settings = Settings(ai_api_key="sk-abc", task_service_email="a@b.cz")
        with pytest.raises(ConfigError) as excinfo:
            settings.require_complete()
        assert excinfo.value.missing == ["task_service_key"]
        assert "task_service_key" in str(excinfo.value)

    def test_require_complete_passes(self, complete_settings):
        complete_settings.require_complete()

    def test_masked_hides_keys(self, complete_settings):
        masked = complete_settings.masked()
        assert masked["ai_api_key"] == "***1234"
        assert masked["task_service_key"] == "***5678"
        assert masked["task_service_email"] == "dev@example.com"
        assert masked["interval"] == 10


class TestSettingsStore:
    """設定ファイルの保存と読み込みのテスト"""

    def test_missing_file_returns_defaults(self, tmp_path):
        store = SettingsStore(tmp_path / "settings.json")
        assert store.load() == Settings()

    def test_save_then_load(self, tmp_path, complete_settings):
        path = tmp_path / "nested" / "settings.json"
        store = SettingsStore(path)

        store.save(complete_settings)

        assert store.load() == complete_settings
        # UIと同じキー名で保存される
        assert json.loads(path.read_text(encoding="utf-8"))["interval"] == 10
        assert not path.with_suffix(".tmp").exists()


class TestAgentConfig:
    """環境変数からの設定値テスト"""

    def test_paths_follow_data_dir(self, tmp_path):
        config = AgentConfig(data_dir=tmp_path)
        assert config.settings_path == tmp_path / "settings.json"
        assert config.db_path == tmp_path / "tracker.db"

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRACKER_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LLM_MODEL", "openai/gpt-4o-mini")
        monkeypatch.setenv("OCR_TIMEOUT", "12.5")
        monkeypatch.setenv("LLM_TIMEOUT", "not-a-number")

        config = AgentConfig()

        assert config.data_dir == tmp_path
        assert config.llm_model == "openai/gpt-4o-mini"
        assert config.ocr_timeout == 12.5
        assert config.llm_timeout == 20.0

    def test_load_local_env(self, monkeypatch, tmp_path):
        """.env.local の値が環境変数に入る"""
        # 後片付けで元の値に戻るよう monkeypatch 経由で一度設定しておく
        monkeypatch.setenv("TASK_SERVICE_URL", "http://placeholder")
        env_file = tmp_path / ".env.local"
        env_file.write_text("TASK_SERVICE_URL=http://localhost:9999\n", encoding="utf-8")

        load_local_env(env_file)

        assert AgentConfig().task_service_url == "http://localhost:9999"
