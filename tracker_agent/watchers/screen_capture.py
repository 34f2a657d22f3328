"""Screen capture built on top of mss and PIL.

The captured frame never leaves this process: it is handed to the
preprocessor and dropped once OCR is done.
"""

import time
from typing import cast

import mss
from mss.exception import ScreenShotError
from PIL import Image

from tracker_agent.logger import logger
from tracker_agent.model.errors import CaptureFailure
from tracker_agent.model.models import CaptureSample


class ScreenCapture:
    """プライマリモニターのスクリーンキャプチャを取得するクラス."""

    def __init__(self, bbox: dict[str, int] | None = None) -> None:
        """初期化する

        Args:
        bbox: キャプチャ領域 {"top": int, "left": int, "width": int, "height": int}
             Noneの場合は最初のキャプチャ時にプライマリモニターを使う

        """
        self.bbox = bbox

    def _get_primary_monitor_bbox(self, sct: "mss.base.MSSBase") -> dict[str, int]:
        """プライマリモニターの実際の解像度を取得."""
        monitors = sct.monitors
        chosen = cast(
            "dict[str, int]",
            monitors[1] if len(monitors) > 1 else monitors[0],
        )
        logger.info("Monitors detected: %s | chosen=%s", len(monitors) - 1, chosen)
        return chosen

    def capture(self) -> CaptureSample:
        """スクリーンキャプチャを1枚取得. 失敗時は CaptureFailure."""
        try:
            with mss.mss() as sct:
                if self.bbox is None:
                    self.bbox = self._get_primary_monitor_bbox(sct)
                screenshot = sct.grab(self.bbox)
                image = Image.frombytes(
                    "RGB", screenshot.size, screenshot.bgra, "raw", "BGRX"
                )
        except (ScreenShotError, OSError) as e:
            logger.exception("Screen capture failed | bbox=%s", self.bbox)
            raise CaptureFailure(f"Screen capture failed: {e}") from e

        return CaptureSample(image=image, captured_at=time.time())
