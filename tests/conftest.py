import sys
from pathlib import Path

import pytest

# テスト用の代役モジュール (fakes.py) をサブディレクトリからも import できるように
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import FakeCapture, StubClassifier, StubOcr  # noqa: E402

from tracker_agent.config import AgentConfig, Settings  # noqa: E402
from tracker_agent.model.models import TaskRecord  # noqa: E402
from tracker_agent.pipeline.correlator import TaskCorrelator  # noqa: E402
from tracker_agent.pipeline.runner import Pipeline  # noqa: E402
from tracker_agent.services.emitter import EventEmitter  # noqa: E402
from tracker_agent.storage.event_store import EventLog, EventStore, SyncQueue  # noqa: E402


@pytest.fixture
def complete_settings():
    """必須項目が揃った設定"""
    return Settings(
        interval=10,
        ai_api_key="sk-test-1234",
        task_service_email="dev@example.com",
        task_service_key="freelo-key-5678",
    )


@pytest.fixture
def agent_config(tmp_path):
    return AgentConfig(data_dir=tmp_path)


@pytest.fixture
def event_store(tmp_path):
    return EventStore(tmp_path / "tracker.db")


@pytest.fixture
def event_log(event_store):
    return EventLog(event_store)


@pytest.fixture
def sync_queue(event_store):
    return SyncQueue(event_store)


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def sample_tasks():
    """テスト用のタスク一覧"""
    return [
        TaskRecord(
            id="101",
            title="Export invoices to PDF",
            description="Billing module",
            project_name="Accounting",
            updated_at=100.0,
        ),
        TaskRecord(
            id="102",
            title="Weekly team meeting",
            description="",
            project_name="Internal",
            updated_at=200.0,
        ),
    ]


@pytest.fixture
def make_pipeline(event_log, emitter):
    """差し替え可能な Pipeline を組み立てる"""

    def _make(**overrides) -> Pipeline:
        options = {
            "capture": FakeCapture(),
            "ocr_engine": StubOcr(),
            "classifier": StubClassifier(),
            "correlator": TaskCorrelator(),
            "event_log": event_log,
            "emitter": emitter,
        }
        options.update(overrides)
        return Pipeline(**options)

    return _make
