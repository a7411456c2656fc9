"""Global shortcut handling and double-tap detection."""

from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

try:  # pragma: no cover - executed during module import
    import keyboard  # type: ignore
except ImportError:  # pragma: no cover - handled when the listener starts
    keyboard = None  # type: ignore


logger = logging.getLogger("neuraltranslator.hotkeys")

MIN_TAP_INTERVAL = 0.05  # Taps closer than this are key-repeat noise.
DOUBLE_TAP_TIMEOUT = 0.3  # Seconds allowed between the two taps.

TRANSLATE_SHORTCUT_EVENT = "translate-shortcut"
LANGUAGE_SWAP_EVENT = "language-swap"
CLEAR_TEXT_EVENT = "clear-text"
COPY_RESULT_EVENT = "copy-result"

_MODIFIER = "command" if sys.platform == "darwin" else "ctrl"

DEFAULT_COMBOS = {
    "translate": f"{_MODIFIER}+c",
    "language_swap": f"{_MODIFIER}+shift+s",
    "clear_text": f"{_MODIFIER}+k",
    "copy_result": f"{_MODIFIER}+shift+c",
}

_BINDING_EVENTS = {
    "translate": TRANSLATE_SHORTCUT_EVENT,
    "language_swap": LANGUAGE_SWAP_EVENT,
    "clear_text": CLEAR_TEXT_EVENT,
    "copy_result": COPY_RESULT_EVENT,
}


@dataclass(frozen=True)
class GestureState:
    """Snapshot of the double-tap detector."""

    first_tap_time: Optional[float]
    is_waiting_for_second: bool


@dataclass(frozen=True)
class HotkeyBinding:
    """A key combination and the application event it produces.

    ``double_tap`` bindings are routed through :class:`DoubleTapDetector`
    instead of emitting their event on every press.
    """

    name: str
    combo: str
    event: str
    double_tap: bool = False

    @property
    def display(self) -> str:
        return "+".join(part.capitalize() for part in self.combo.split("+"))


@dataclass(frozen=True)
class HotkeyEvent:
    """Event generated when a shortcut or gesture is triggered."""

    name: str
    timestamp: float


class DoubleTapDetector:
    """Turn a stream of raw taps into a single "double tap" confirmation.

    State machine::

        Idle --tap--> AwaitingSecond
        AwaitingSecond --tap, elapsed <= min_interval--> AwaitingSecond (ignored)
        AwaitingSecond --tap, elapsed <= max_interval--> Idle (confirmed)
        AwaitingSecond --tap, elapsed > max_interval--> AwaitingSecond (new first tap)

    ``elapsed`` is measured from the first tap with a monotonic clock. The
    lock covers the transition only; ``on_double_tap`` runs after it has been
    released, so the callback may tap again without deadlocking.
    """

    def __init__(
        self,
        on_double_tap: Optional[Callable[[float], None]] = None,
        *,
        min_interval: float = MIN_TAP_INTERVAL,
        max_interval: float = DOUBLE_TAP_TIMEOUT,
        time_provider: Callable[[], float] = time.monotonic,
    ) -> None:
        if min_interval < 0 or max_interval <= min_interval:
            raise ValueError("Double tap window must satisfy 0 <= min_interval < max_interval")
        self.on_double_tap = on_double_tap
        self.min_interval = min_interval
        self.max_interval = max_interval
        self._time_provider = time_provider
        self._lock = threading.Lock()
        self._first_tap_time: Optional[float] = None
        self._waiting_for_second = False

    @property
    def state(self) -> GestureState:
        with self._lock:
            return GestureState(self._first_tap_time, self._waiting_for_second)

    def handle_tap(self, *, timestamp: Optional[float] = None) -> bool:
        """Register a raw tap. Returns ``True`` if it completed a double tap."""

        now = self._time_provider() if timestamp is None else timestamp
        with self._lock:
            confirmed = self._transition(now)

        if confirmed:
            logger.info("Double tap detected")
            if self.on_double_tap is not None:
                self.on_double_tap(now)
        return confirmed

    def reset(self) -> None:
        with self._lock:
            self._first_tap_time = None
            self._waiting_for_second = False

    def _transition(self, now: float) -> bool:
        if self._waiting_for_second and self._first_tap_time is not None:
            elapsed = now - self._first_tap_time
            if elapsed <= self.min_interval:
                logger.debug("Tap %.3fs after first ignored (key repeat)", elapsed)
                return False
            if elapsed <= self.max_interval:
                self._first_tap_time = None
                self._waiting_for_second = False
                return True
            logger.debug("Double tap timeout exceeded; treating tap as a new first tap")

        self._first_tap_time = now
        self._waiting_for_second = True
        return False


class BaseHotkeyService:
    """Protocol-like base class for hotkey backends."""

    def start(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def describe_bindings(self) -> Sequence[str]:  # pragma: no cover - interface definition
        raise NotImplementedError


class GlobalShortcutListener(BaseHotkeyService):
    """Register global shortcuts with the ``keyboard`` package.

    Key callbacks arrive on the hook thread. Double-tap bindings feed
    ``detector``; every other binding is put on ``event_queue`` directly.
    Nothing here blocks, so the hook thread is never held up.
    """

    def __init__(
        self,
        bindings: Sequence[HotkeyBinding],
        detector: DoubleTapDetector,
        event_queue: "queue.Queue[Optional[HotkeyEvent]]",
        *,
        keyboard_module: Any = None,
        time_provider: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bindings: List[HotkeyBinding] = list(bindings)
        self._detector = detector
        self._event_queue = event_queue
        self._keyboard = keyboard_module if keyboard_module is not None else keyboard
        self._time_provider = time_provider
        self._handles: Dict[str, Any] = {}

    def start(self) -> None:
        if self._keyboard is None:
            raise RuntimeError(
                "The 'keyboard' package is required for global shortcuts. Install it with 'pip install keyboard'."
            )
        if self._handles:
            return
        for binding in self._bindings:
            callback = self._tap_callback() if binding.double_tap else self._event_callback(binding)
            try:
                handle = self._keyboard.add_hotkey(binding.combo, callback)
            except (ValueError, OSError, ImportError) as exc:
                logger.error("Failed to register hotkey %s (%s): %s", binding.name, binding.display, exc)
                continue
            self._handles[binding.name] = handle
            logger.info("Registered hotkey '%s' as %s", binding.name, binding.display)

    def stop(self) -> None:
        if self._keyboard is None:
            return
        for name, handle in list(self._handles.items()):
            try:
                self._keyboard.remove_hotkey(handle)
            except (KeyError, ValueError):
                logger.debug("Hotkey %s was already removed", name)
        self._handles.clear()

    def describe_bindings(self) -> Sequence[str]:
        return [f"{binding.name}: {binding.display}" for binding in self._bindings]

    def _tap_callback(self) -> Callable[[], None]:
        def on_tap() -> None:
            self._detector.handle_tap()

        return on_tap

    def _event_callback(self, binding: HotkeyBinding) -> Callable[[], None]:
        def on_press() -> None:
            self.emit(binding.event)

        return on_press

    def emit(self, event_name: str, timestamp: Optional[float] = None) -> None:
        event = HotkeyEvent(event_name, self._time_provider() if timestamp is None else timestamp)
        try:
            self._event_queue.put_nowait(event)
        except queue.Full:
            logger.warning("Dropping hotkey event %s (queue full)", event_name)


def build_bindings_from_preferences(preferences: Dict[str, object]) -> List[HotkeyBinding]:
    hotkeys = preferences.get("hotkeys", {})
    if not isinstance(hotkeys, dict):
        hotkeys = {}

    bindings = []
    for name, default_combo in DEFAULT_COMBOS.items():
        prefs = hotkeys.get(name)
        if not isinstance(prefs, dict):
            prefs = {}
        combo = prefs.get("combo")
        if not isinstance(combo, str) or not combo.strip():
            combo = default_combo
        bindings.append(
            HotkeyBinding(
                name=name,
                combo=combo.strip().lower(),
                event=_BINDING_EVENTS[name],
                double_tap=(name == "translate"),
            )
        )
    return bindings
