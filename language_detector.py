"""Cheap character-range language detection used to pre-fill language fields.

This is a pre-filter, not a classifier. It only knows four answers
(``ja``, ``zh``, ``ko`` and ``en``) and anything that is not CJK or Hangul is
reported as English, including every other Latin-script language. Chinese is
told apart from Japanese only by a handful of common function words, so kanji
only Japanese text containing e.g. ``的`` is reported as Chinese.
"""

from __future__ import annotations

from dataclasses import dataclass


# Hiragana U+3040..U+309F and Katakana U+30A0..U+30FF are adjacent.
_KANA_RANGE = ("\u3040", "\u30ff")
_CJK_RANGE = ("\u4e00", "\u9faf")
_HANGUL_RANGE = ("\uac00", "\ud7af")

CHINESE_FUNCTION_WORDS = frozenset("的是在有了和")

SUPPORTED_LANGUAGES = ("ja", "zh", "ko", "en")


@dataclass(frozen=True)
class LanguageDetectionResult:
    language: str


def _in_range(char: str, bounds: tuple[str, str]) -> bool:
    return bounds[0] <= char <= bounds[1]


def _is_kana(char: str) -> bool:
    return _in_range(char, _KANA_RANGE)


def _is_cjk(char: str) -> bool:
    return _in_range(char, _CJK_RANGE)


def detect_language(text: str) -> LanguageDetectionResult:
    """Classify ``text`` into one of :data:`SUPPORTED_LANGUAGES`. Never fails."""

    if any(_is_kana(char) or _is_cjk(char) for char in text):
        has_chinese_marker = any(_is_cjk(char) and char in CHINESE_FUNCTION_WORDS for char in text)
        has_kana = any(_is_kana(char) for char in text)
        if has_chinese_marker and not has_kana:
            return LanguageDetectionResult("zh")
        return LanguageDetectionResult("ja")

    if any(_in_range(char, _HANGUL_RANGE) for char in text):
        return LanguageDetectionResult("ko")

    return LanguageDetectionResult("en")
