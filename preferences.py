"""User preferences stored as JSON in the home directory."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from hotkey_manager import DEFAULT_COMBOS, DOUBLE_TAP_TIMEOUT, MIN_TAP_INTERVAL
from translation_service import (
    DEFAULT_BASE_URL,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    RECOMMENDED_MODELS,
    ClientSettings,
)


logger = logging.getLogger("neuraltranslator.preferences")

PREFERENCES_FILE = Path.home() / ".neural_translator_preferences.json"

DEFAULT_DEST_LANGUAGE = "ja"
DEFAULT_WORKERS = 2

DEFAULT_HOTKEY_PREFERENCES = {
    **{name: {"combo": combo} for name, combo in DEFAULT_COMBOS.items()},
    "min_tap_interval": MIN_TAP_INTERVAL,
    "double_tap_timeout": DOUBLE_TAP_TIMEOUT,
}


@dataclass
class AppPreferences:
    base_url: str = DEFAULT_BASE_URL
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    models: List[str] = field(default_factory=lambda: list(RECOMMENDED_MODELS))
    history_dir: Optional[str] = None
    source_language: Optional[str] = None
    dest_language: str = DEFAULT_DEST_LANGUAGE
    hotkeys: dict = field(default_factory=lambda: json.loads(json.dumps(DEFAULT_HOTKEY_PREFERENCES)))
    workers: int = DEFAULT_WORKERS

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            models=tuple(self.models),
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
        )


def _read_preferences_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
        logger.warning("Ignoring unreadable preferences file %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _positive_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _optional_string(value: object) -> bool:
    return value is None or (isinstance(value, str) and bool(value.strip()))


def _merge_hotkeys(source: object) -> dict:
    result = json.loads(json.dumps(DEFAULT_HOTKEY_PREFERENCES))
    if not isinstance(source, dict):
        return result

    for name in DEFAULT_COMBOS:
        entry = source.get(name)
        if not isinstance(entry, dict):
            continue
        combo = entry.get("combo")
        if isinstance(combo, str) and combo.strip():
            result[name]["combo"] = combo.strip()

    min_interval = source.get("min_tap_interval")
    timeout = source.get("double_tap_timeout")
    if isinstance(min_interval, (int, float)) and not isinstance(min_interval, bool) and min_interval >= 0:
        result["min_tap_interval"] = float(min_interval)
    if _positive_number(timeout):
        result["double_tap_timeout"] = float(timeout)
    if result["double_tap_timeout"] <= result["min_tap_interval"]:
        logger.warning("Invalid double tap window in preferences; using defaults")
        result["min_tap_interval"] = MIN_TAP_INTERVAL
        result["double_tap_timeout"] = DOUBLE_TAP_TIMEOUT
    return result


def load_preferences(path: Path = PREFERENCES_FILE) -> AppPreferences:
    """Load preferences, falling back to the default for every invalid field."""

    data = _read_preferences_file(path)
    prefs = AppPreferences()

    ollama = data.get("ollama")
    if isinstance(ollama, dict):
        base_url = ollama.get("base_url")
        if isinstance(base_url, str) and base_url.strip():
            prefs.base_url = base_url.strip()
        if _positive_number(ollama.get("connect_timeout")):
            prefs.connect_timeout = float(ollama["connect_timeout"])
        if _positive_number(ollama.get("read_timeout")):
            prefs.read_timeout = float(ollama["read_timeout"])
        models = ollama.get("models")
        if isinstance(models, list) and models and all(isinstance(m, str) and m.strip() for m in models):
            prefs.models = [m.strip() for m in models]

    history_dir = data.get("history_dir")
    if isinstance(history_dir, str) and history_dir.strip():
        prefs.history_dir = history_dir.strip()

    source = data.get("source_language")
    if _optional_string(source):
        prefs.source_language = source
    dest = data.get("dest_language")
    if isinstance(dest, str) and dest.strip():
        prefs.dest_language = dest.strip()

    prefs.hotkeys = _merge_hotkeys(data.get("hotkeys"))

    workers = data.get("workers")
    if isinstance(workers, int) and not isinstance(workers, bool) and workers >= 1:
        prefs.workers = workers

    return prefs


def save_dest_language(dest: str, path: Path = PREFERENCES_FILE) -> None:
    data = _read_preferences_file(path)
    data["dest_language"] = dest
    if "hotkeys" not in data:
        data["hotkeys"] = DEFAULT_HOTKEY_PREFERENCES
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to save preferences to %s: %s", path, exc)
