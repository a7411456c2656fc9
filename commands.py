"""Command surface exposed to the GUI layer.

Every command returns a :class:`CommandResult`: either ``ok`` with a
JSON-friendly ``value`` or a human readable ``error`` string. Only the
domain failures listed in ``_HANDLED_ERRORS`` become error results; anything
else is a bug and propagates.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - handled in __init__
    pyperclip = None  # type: ignore

import document_reader
from document_reader import DocumentError
from history_store import HistoryError, HistoryStore, PathLike
from language_detector import detect_language
from prompt_templates import build_expert_translation_prompt
from system_metrics import get_model_metrics, get_system_metrics
from translation_service import OllamaClient, TranslationError, TranslationRequest


logger = logging.getLogger("neuraltranslator.commands")


class ClipboardUnavailableError(RuntimeError):
    """Raised when no clipboard backend is installed."""


_HANDLED_ERRORS: tuple = (TranslationError, HistoryError, DocumentError, ClipboardUnavailableError)
if pyperclip is not None:
    _HANDLED_ERRORS += (pyperclip.PyperclipException,)

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "CommandResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, message: str) -> "CommandResult":
        return cls(ok=False, error=message)

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {"ok": False, "error": self.error}


def command(func: F) -> F:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> CommandResult:
        try:
            return CommandResult.success(func(*args, **kwargs))
        except _HANDLED_ERRORS as exc:
            logger.warning("Command %s failed: %s", func.__name__, exc)
            return CommandResult.failure(str(exc))

    return wrapper  # type: ignore[return-value]


class TranslatorCommands:
    def __init__(
        self,
        client: OllamaClient,
        history: HistoryStore,
        *,
        clipboard_module=pyperclip,
    ) -> None:
        self._client = client
        self._history = history
        self._clipboard = clipboard_module

    # Translation ------------------------------------------------------

    @command
    def translate(self, text: str, from_lang: str, to_lang: str) -> dict:
        return self._client.translate(TranslationRequest(text, from_lang, to_lang)).to_dict()

    @command
    def translate_with_prompt(self, text: str, from_lang: str, to_lang: str) -> dict:
        prompt = build_expert_translation_prompt(text, from_lang, to_lang)
        request = TranslationRequest(prompt, from_lang, to_lang)
        return self._client.translate_with_prompt(request).to_dict()

    @command
    def detect_language(self, text: str) -> dict:
        return {"language": detect_language(text).language}

    @command
    def check_health(self) -> bool:
        return self._client.check_health()

    @command
    def improve_text(self, text: str, language: str) -> dict:
        return self._client.improve_text(text, language).to_dict()

    @command
    def list_recommended_models(self) -> list:
        return list(self._client.models)

    # History ----------------------------------------------------------

    @command
    def save_history(
        self,
        source_text: str,
        translated_text: str,
        from_language: str,
        to_language: str,
        engine: str,
        latency_ms: Optional[int] = None,
        history_path: Optional[PathLike] = None,
    ) -> str:
        return self._history.append(
            source_text,
            translated_text,
            from_language,
            to_language,
            engine,
            latency_ms,
            directory=history_path,
        )

    @command
    def load_history(self, limit: Optional[int] = None, history_path: Optional[PathLike] = None) -> list:
        return [record.to_dict() for record in self._history.load(limit, directory=history_path)]

    @command
    def clear_history(self, history_path: Optional[PathLike] = None) -> None:
        self._history.clear(directory=history_path)

    @command
    def history_stats(self, history_path: Optional[PathLike] = None) -> dict:
        return self._history.stats(directory=history_path).to_dict()

    # Clipboard --------------------------------------------------------

    @command
    def read_clipboard(self) -> str:
        self._require_clipboard()
        return self._clipboard.paste()

    @command
    def write_clipboard(self, text: str) -> None:
        self._require_clipboard()
        self._clipboard.copy(text)

    def _require_clipboard(self) -> None:
        if self._clipboard is None:
            raise ClipboardUnavailableError(
                "The 'pyperclip' package is required. Install it with 'pip install pyperclip'."
            )

    # Files and metrics ------------------------------------------------

    @command
    def read_file_content(self, file_path: PathLike) -> str:
        return document_reader.read_file_content(file_path)

    @command
    def validate_file_type(self, file_path: PathLike) -> str:
        return document_reader.validate_file_type(file_path)

    @command
    def process_file_content(self, file_data: str, file_name: str) -> str:
        return document_reader.process_file_content(file_data, file_name)

    @command
    def system_metrics(self) -> dict:
        return get_system_metrics()

    @command
    def model_metrics(self, model_name: str) -> dict:
        return get_model_metrics(model_name)
