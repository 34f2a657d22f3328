"""Local OCR via Tesseract (pytesseract).

Tesseract runs as a subprocess, so the call is CPU-heavy and may take several
seconds.  It must only be called from the pipeline worker.  If the binary is
missing, one automatic install is attempted per process before giving up.
"""

import shutil
import subprocess
import sys
from collections.abc import Callable
from typing import Any, Protocol

import pytesseract
from PIL import Image

from tracker_agent.logger import logger
from tracker_agent.model.errors import OcrFailure, OcrFailureKind
from tracker_agent.model.models import OcrResult

# PSM 11: まばらなテキスト. 画面上の短いテキストブロック向け
PAGE_SEGMENTATION_MODE = 11
INSTALL_TIMEOUT = 600


class OcrEngine(Protocol):
    def recognize(self, image: Image.Image, timeout: float) -> OcrResult: ...


def _install_commands() -> list[list[str]]:
    if sys.platform == "darwin":
        return [["brew", "install", "tesseract"]]
    if sys.platform.startswith("linux"):
        return [
            ["sudo", "-n", "apt-get", "update"],
            ["sudo", "-n", "apt-get", "install", "-y", "tesseract-ocr", "tesseract-ocr-eng"],
        ]
    return []


def install_tesseract() -> None:
    """Tesseractの自動インストールを試みる. 失敗時は OcrFailure."""
    commands = _install_commands()
    if not commands:
        raise OcrFailure(
            OcrFailureKind.ENGINE_UNAVAILABLE,
            f"automatic install is not supported on {sys.platform}; install Tesseract manually",
        )

    for command in commands:
        if shutil.which(command[0]) is None:
            raise OcrFailure(
                OcrFailureKind.ENGINE_UNAVAILABLE, f"{command[0]} not found"
            )
        logger.info("Installing Tesseract: %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=INSTALL_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise OcrFailure(
                OcrFailureKind.ENGINE_UNAVAILABLE, "install timed out"
            ) from e
        if result.returncode != 0:
            raise OcrFailure(
                OcrFailureKind.ENGINE_UNAVAILABLE,
                f"install failed: {result.stderr.strip()[-200:]}",
            )


def _collect_text(data: dict[str, list[Any]]) -> OcrResult:
    """image_to_data の結果から行ごとのテキストと平均信頼度を作る."""
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []
    for i, word in enumerate(data.get("text", [])):
        word = str(word).strip()
        try:
            conf = float(data["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            conf = -1.0
        if not word or conf < 0:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        confidences.append(conf)

    text = "\n".join(" ".join(words) for words in lines.values())
    confidence = sum(confidences) / len(confidences) / 100.0 if confidences else 0.0
    return OcrResult(text=text, confidence=min(1.0, max(0.0, confidence)))


class TesseractOcr:
    """pytesseract をラップする OCR アダプタ."""

    def __init__(
        self,
        lang: str = "eng",
        psm: int = PAGE_SEGMENTATION_MODE,
        installer: Callable[[], None] = install_tesseract,
    ) -> None:
        self.lang = lang
        self.psm = psm
        self._installer = installer
        self._install_attempted = False

    def _run(self, image: Image.Image, timeout: float) -> OcrResult:
        data = pytesseract.image_to_data(
            image,
            lang=self.lang,
            config=f"--psm {self.psm}",
            output_type=pytesseract.Output.DICT,
            timeout=timeout,
        )
        return _collect_text(data)

    def _ensure_engine(self) -> None:
        if self._install_attempted:
            raise OcrFailure(
                OcrFailureKind.ENGINE_UNAVAILABLE, "Tesseract is not installed"
            )
        self._install_attempted = True
        logger.warning("Tesseract not found, attempting automatic install")
        self._installer()
        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            raise OcrFailure(
                OcrFailureKind.ENGINE_UNAVAILABLE,
                "Tesseract still missing after install",
            ) from e
        logger.info("Tesseract %s installed", version)

    def recognize(self, image: Image.Image, timeout: float) -> OcrResult:
        """画像からテキストを抽出する.

        Raises:
            OcrFailure: ENGINE_UNAVAILABLE（インストール失敗）または TIMEOUT

        """
        try:
            try:
                return self._run(image, timeout)
            except pytesseract.TesseractNotFoundError:
                self._ensure_engine()
                return self._run(image, timeout)
        except pytesseract.TesseractNotFoundError as e:
            raise OcrFailure(OcrFailureKind.ENGINE_UNAVAILABLE, str(e)) from e
        except RuntimeError as e:
            # pytesseract はタイムアウトを RuntimeError で通知する
            if "timeout" in str(e).lower():
                raise OcrFailure(OcrFailureKind.TIMEOUT, f"exceeded {timeout}s") from e
            raise
