"""Error taxonomy shared by the pipeline, the scheduler and the HTTP layer."""

from enum import Enum


class TrackerError(Exception):
    """トラッカー全体の基底例外."""


class ConfigError(TrackerError):
    """必須設定が欠けている. セッション開始をブロックする."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required settings: {', '.join(missing)}")


class CaptureFailure(TrackerError):
    """スクリーンキャプチャの失敗. サンプルは破棄され失敗回数に数える."""


class OcrFailureKind(Enum):
    ENGINE_UNAVAILABLE = "engine_unavailable"
    TIMEOUT = "timeout"


class OcrFailure(TrackerError):
    def __init__(self, kind: OcrFailureKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"OCR {kind.value}: {detail}" if detail else f"OCR {kind.value}")


class ClassificationFailureKind(Enum):
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"


class ClassificationFailure(TrackerError):
    def __init__(self, kind: ClassificationFailureKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(
            f"Classification {kind.value}: {detail}"
            if detail
            else f"Classification {kind.value}"
        )

    @property
    def is_fatal(self) -> bool:
        return self.kind is ClassificationFailureKind.UNAUTHORIZED


class TaskServiceError(TrackerError):
    """タスク一覧取得の失敗."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class SyncFailure(TaskServiceError):
    """イベント配信の失敗. キューに残して再試行する."""
