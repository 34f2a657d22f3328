"""Text helpers for matching OCR output against task records."""

import re

UNKNOWN_APPLICATION = "Unknown Application"

# 先に一致したものを採用する
KNOWN_APPLICATIONS: list[tuple[tuple[str, ...], str]] = [
    (("visual studio code", "vscode"), "Visual Studio Code"),
    (("google chrome", "chrome"), "Google Chrome"),
    (("firefox",), "Firefox"),
    (("safari",), "Safari"),
    (("freelo",), "Freelo"),
    (("slack",), "Slack"),
    (("iterm", "terminal"), "Terminal"),
]

_NON_WORD = re.compile(r"[^\w\s]+")


def normalize_text(text: str) -> str:
    """小文字化して記号を除き、空白を1つにまとめる."""
    cleaned = _NON_WORD.sub("", text.lower()).replace("_", "")
    return " ".join(cleaned.split())


def jaccard_similarity(text1: str, text2: str) -> float:
    words1 = set(text1.split())
    words2 = set(text2.split())
    if not words1 and not words2:
        return 1.0
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def matched_keywords(normalized_text: str, normalized_title: str) -> list[str]:
    """タイトル中の4文字以上の単語でテキストに含まれるもの."""
    return [
        word
        for word in normalized_title.split()
        if len(word) > 3 and word in normalized_text
    ]


def detect_application(text: str) -> str:
    normalized = normalize_text(text)
    for needles, name in KNOWN_APPLICATIONS:
        if any(needle in normalized for needle in needles):
            return name
    return UNKNOWN_APPLICATION
