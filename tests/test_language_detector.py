import unittest

from language_detector import detect_language


class DetectLanguageTests(unittest.TestCase):
    def assertDetected(self, text: str, expected: str) -> None:
        self.assertEqual(detect_language(text).language, expected, text)

    def test_hiragana_is_japanese(self) -> None:
        self.assertDetected("こんにちは", "ja")

    def test_katakana_with_kanji_is_japanese(self) -> None:
        self.assertDetected("東京タワー", "ja")

    def test_function_words_without_kana_are_chinese(self) -> None:
        self.assertDetected("我是学生", "zh")
        self.assertDetected("这是我的书", "zh")

    def test_kana_wins_over_function_words(self) -> None:
        self.assertDetected("私的な話です", "ja")

    def test_kanji_without_markers_is_japanese(self) -> None:
        self.assertDetected("日本語", "ja")

    def test_hangul_is_korean(self) -> None:
        self.assertDetected("안녕하세요", "ko")

    def test_everything_else_is_english(self) -> None:
        self.assertDetected("Hello, world", "en")
        self.assertDetected("Bonjour tout le monde", "en")
        self.assertDetected("", "en")
        self.assertDetected("12345 !?", "en")


if __name__ == "__main__":  # pragma: no cover - allows direct execution
    unittest.main()
