"""Prompt builders for the local inference server."""

from __future__ import annotations


def build_translation_prompt(text: str, from_lang: str, to_lang: str) -> str:
    return f"Translate {from_lang} to {to_lang}:\n{text}"


def build_expert_translation_prompt(text: str, from_lang: str, to_lang: str) -> str:
    """Return a fully formed instruction prompt for a professional translation."""

    return (
        f"You are an expert professional translator specializing in {from_lang} to {to_lang} translation.\n\n"
        "Instructions:\n"
        "- Translate accurately while preserving context, tone, and cultural nuances\n"
        "- Maintain the original formatting and structure\n"
        "- For technical terms, use widely accepted translations\n"
        "- For proper nouns, keep them as-is unless standard translations exist\n"
        "- Return ONLY the translation, no explanations or notes\n\n"
        f"Text to translate:\n{text}"
    )


_IMPROVEMENT_PROMPTS = {
    "Japanese": (
        "あなたは日本語の校正・文章改善のプロフェッショナルです。以下の指示に従ってテキストを改善してください：\n\n"
        "指示：\n"
        "- より自然で読みやすい日本語に改善\n"
        "- 文法的な誤りを修正\n"
        "- 表現をより洗練させる\n"
        "- 読み手にとって分かりやすくする\n"
        "- 改善した文章のみを返す（説明は不要）\n\n"
        "改善するテキスト：\n{text}"
    ),
    "English": (
        "You are a professional English editor and writing improvement specialist. "
        "Please improve the following text according to these instructions:\n\n"
        "Instructions:\n"
        "- Make the English more natural and fluent\n"
        "- Fix any grammatical errors\n"
        "- Enhance clarity and readability\n"
        "- Improve word choice and style\n"
        "- Return only the improved text (no explanations needed)\n\n"
        "Text to improve:\n{text}"
    ),
    "Chinese": (
        "您是专业的中文文本校对和改进专家。请按照以下指示改进文本：\n\n"
        "指示：\n"
        "- 使中文更加自然流畅\n"
        "- 修正语法错误\n"
        "- 提高表达的准确性和可读性\n"
        "- 优化用词和语言风格\n"
        "- 只返回改进后的文本（无需说明）\n\n"
        "需要改进的文本：\n{text}"
    ),
    "Korean": (
        "당신은 한국어 교정 및 문장 개선 전문가입니다. 다음 지시사항에 따라 텍스트를 개선해주세요:\n\n"
        "지시사항:\n"
        "- 더 자연스럽고 읽기 쉬운 한국어로 개선\n"
        "- 문법적 오류 수정\n"
        "- 표현을 더 세련되게 만들기\n"
        "- 읽는 사람이 이해하기 쉽게 하기\n"
        "- 개선된 문장만 반환 (설명 불필요)\n\n"
        "개선할 텍스트:\n{text}"
    ),
    "Spanish": (
        "Eres un experto profesional en corrección y mejora de textos en español. "
        "Por favor, mejora el siguiente texto según estas instrucciones:\n\n"
        "Instrucciones:\n"
        "- Hacer el español más natural y fluido\n"
        "- Corregir errores gramaticales\n"
        "- Mejorar la claridad y legibilidad\n"
        "- Perfeccionar la elección de palabras y el estilo\n"
        "- Devolver solo el texto mejorado (no se necesitan explicaciones)\n\n"
        "Texto a mejorar:\n{text}"
    ),
    "French": (
        "Vous êtes un expert professionnel en correction et amélioration de textes français. "
        "Veuillez améliorer le texte suivant selon ces instructions :\n\n"
        "Instructions :\n"
        "- Rendre le français plus naturel et fluide\n"
        "- Corriger les erreurs grammaticales\n"
        "- Améliorer la clarté et la lisibilité\n"
        "- Perfectionner le choix des mots et le style\n"
        "- Retourner uniquement le texte amélioré (aucune explication nécessaire)\n\n"
        "Texte à améliorer :\n{text}"
    ),
    "German": (
        "Sie sind ein professioneller Experte für deutsche Textkorrektur und -verbesserung. "
        "Bitte verbessern Sie den folgenden Text gemäß diesen Anweisungen:\n\n"
        "Anweisungen:\n"
        "- Das Deutsche natürlicher und flüssiger gestalten\n"
        "- Grammatikfehler korrigieren\n"
        "- Klarheit und Lesbarkeit verbessern\n"
        "- Wortwahl und Stil verfeinern\n"
        "- Nur den verbesserten Text zurückgeben (keine Erklärungen erforderlich)\n\n"
        "Zu verbessernder Text:\n{text}"
    ),
}

_GENERIC_IMPROVEMENT_PROMPT = (
    "You are a professional text editor and improvement specialist. "
    "Please improve the following text to make it more natural, clear, and well-written. "
    "Fix any grammatical errors and enhance readability. "
    "Return only the improved text without explanations.\n\n"
    "Text to improve:\n{text}"
)


def build_improvement_prompt(text: str, language: str) -> str:
    """Return an editing prompt written in ``language`` (an English language name)."""

    template = _IMPROVEMENT_PROMPTS.get(language, _GENERIC_IMPROVEMENT_PROMPT)
    return template.replace("{text}", text)
