"""Activity classification via an OpenAI-compatible chat API (default: OpenRouter).

Only OCR text is sent.  Screenshots never leave the machine.
"""

import json
from typing import Protocol

import requests

from tracker_agent.logger import logger
from tracker_agent.model.errors import ClassificationFailure, ClassificationFailureKind
from tracker_agent.model.models import UNKNOWN_LABEL, ClassificationResult

HTTP_OK = 200
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429
MAX_INPUT_CHARS = 3000
MAX_LABEL_CHARS = 100


class ActivityClassifier(Protocol):
    def classify(self, text: str, *, uncertain: bool = False) -> ClassificationResult: ...


def clean_json_response(content: str) -> str:
    """```json ... ``` のようなコードブロックを取り除く."""
    cleaned = content.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


class Classifier:
    """OCRテキストからアクティビティのラベルを推定するクライアント."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model_name: str = "google/gemini-2.5-flash",
        timeout: float = 20.0,
        confidence_floor: float = 0.4,
    ) -> None:
        """初期化

        Args:
        api_key: Bearerトークン
        base_url: OpenAI互換APIのベースURL
        model_name: 使用するモデル名
        timeout: APIタイムアウト(秒). 再試行はしない
        confidence_floor: これ未満の確信度は Unknown として扱う

        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.timeout = timeout
        self.confidence_floor = confidence_floor
        self.chat_url = f"{self.base_url}/chat/completions"

        self.system_prompt = """
You classify what a person is doing on their work computer from text that was
read off their screen by OCR. The text may be noisy or partial.

Return ONLY a JSON object with these exact keys:
- activity_label: short description of the visible activity (max 60 chars),
  e.g. "Editing Python code", "Reading email", "Browsing documentation"
- confidence: number between 0 and 1

Describe only what the text shows. Do not invent applications or projects.
""".strip()

    def _build_messages(self, text: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {
                "role": "user",
                "content": f"Screen text:\n```\n{text[:MAX_INPUT_CHARS]}\n```",
            },
        ]

    def _parse(self, content: str) -> ClassificationResult:
        try:
            data = json.loads(clean_json_response(content))
            label = str(data.get("activity_label") or "").strip()[:MAX_LABEL_CHARS]
            confidence = float(data.get("confidence", 0.0))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            raise ClassificationFailure(
                ClassificationFailureKind.NETWORK_ERROR, f"unparsable reply: {e}"
            ) from e

        confidence = min(1.0, max(0.0, confidence))
        if not label or label == UNKNOWN_LABEL or confidence < self.confidence_floor:
            return ClassificationResult.unknown()
        return ClassificationResult(activity_label=label, confidence=confidence)

    def classify(self, text: str, *, uncertain: bool = False) -> ClassificationResult:
        """テキストを分類する. 1回だけ送信し、再試行しない.

        Args:
            text: OCRで抽出したテキスト
            uncertain: OCRの確信度が低い場合True. ネットワークに出さず Unknown

        Raises:
            ClassificationFailure: 認証エラー、レート制限、通信エラー

        """
        if uncertain or not text.strip():
            return ClassificationResult.unknown(uncertain=True)

        payload = {
            "model": self.model_name,
            "messages": self._build_messages(text),
            "temperature": 0.2,
            "max_tokens": 150,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        try:
            response = requests.post(
                self.chat_url,
                json=payload,
                timeout=self.timeout,
                headers=headers,
            )
        except requests.exceptions.Timeout as e:
            raise ClassificationFailure(
                ClassificationFailureKind.NETWORK_ERROR, "timeout"
            ) from e
        except requests.RequestException as e:
            raise ClassificationFailure(
                ClassificationFailureKind.NETWORK_ERROR, str(e)
            ) from e

        status_code = int(getattr(response, "status_code", 0))
        if status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            raise ClassificationFailure(
                ClassificationFailureKind.UNAUTHORIZED, f"HTTP {status_code}"
            )
        if status_code == HTTP_TOO_MANY_REQUESTS:
            raise ClassificationFailure(
                ClassificationFailureKind.RATE_LIMITED, f"HTTP {status_code}"
            )
        if status_code != HTTP_OK:
            raise ClassificationFailure(
                ClassificationFailureKind.NETWORK_ERROR, f"HTTP {status_code}"
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassificationFailure(
                ClassificationFailureKind.NETWORK_ERROR, "malformed response"
            ) from e

        result = self._parse(str(content))
        logger.info(
            "Classified activity: %s (%.0f%%)",
            result.activity_label,
            result.confidence * 100,
        )
        return result
