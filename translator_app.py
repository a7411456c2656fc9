"""Background runtime that translates the clipboard after a double Ctrl+C."""

from __future__ import annotations

import argparse
import contextlib
import logging
import queue
import sys
import threading
import time
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import IO, Any, Callable, List, Optional, Sequence

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - handled in __init__
    pyperclip = None  # type: ignore

try:  # pragma: no cover - optional dependency for system tray support
    import pystray  # type: ignore
    from pystray import MenuItem  # type: ignore
except ImportError:  # pragma: no cover - handled when starting the tray icon
    pystray = None  # type: ignore
    MenuItem = None  # type: ignore

try:  # pragma: no cover - optional dependency for system tray support
    from PIL import Image, ImageDraw  # type: ignore
except ImportError:  # pragma: no cover - handled when starting the tray icon
    Image = None  # type: ignore
    ImageDraw = None  # type: ignore

from history_store import HistoryError, HistoryStore, PathLike
from hotkey_manager import (
    CLEAR_TEXT_EVENT,
    COPY_RESULT_EVENT,
    LANGUAGE_SWAP_EVENT,
    TRANSLATE_SHORTCUT_EVENT,
    BaseHotkeyService,
    DoubleTapDetector,
    GlobalShortcutListener,
    HotkeyBinding,
    HotkeyEvent,
    build_bindings_from_preferences,
)
from language_detector import detect_language
from preferences import PREFERENCES_FILE, AppPreferences, load_preferences, save_dest_language
from translation_service import OllamaClient, TranslationError, TranslationRequest


LOG_FILE_NAME = "neural_translator.log"
LOG_MAX_BYTES = 2_097_152
LOG_BACKUP_COUNT = 3
LOCK_FILE_NAME = ".neural_translator.lock"

ENGINE_NAME = "ollama"
LANGUAGE_SEQUENCE = ("ja", "en")

logger = logging.getLogger("neuraltranslator.app")


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach the rotating file and console handlers to the package logger once."""

    root = logging.getLogger("neuraltranslator")
    root.setLevel(level)
    if root.handlers:
        return root

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    log_dir = PREFERENCES_FILE.parent
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"File logging disabled: {exc}", file=sys.stderr)
    else:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    return root


def _resource_path(relative_path: str) -> Path:
    """Return an absolute path to a bundled resource."""

    base_path = Path(getattr(sys, "_MEIPASS", Path(__file__).resolve().parent))  # type: ignore[attr-defined]
    return base_path / relative_path


@dataclass(frozen=True)
class TranslationJob:
    text: str
    src: Optional[str]
    dest: str


class SingleInstanceError(RuntimeError):
    """Raised when another instance of the application is already running."""


class SingleInstanceGuard:
    """Exclusive lock on a history directory, held for the process lifetime.

    The history store rewrites its document without locking the file, so a
    directory may only have one writer. The lock file sits next to the
    history document it protects; two instances pointed at different
    history directories do not block each other.
    """

    def __init__(self, history_directory: PathLike) -> None:
        self._lock_path = Path(history_directory) / LOCK_FILE_NAME
        self._lock_file: Optional[IO[str]] = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def acquire(self) -> None:
        if self._lock_file is not None:
            return
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self._lock_path, "a+")
        try:
            if sys.platform == "win32":  # pragma: no cover - platform specific
                import msvcrt  # type: ignore

                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
            else:  # pragma: no cover - exercised on non-Windows platforms
                import fcntl  # type: ignore

                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            # Held by another instance: keep its lock file in place.
            lock_file.close()
            raise SingleInstanceError(
                f"Another instance is already using the history in {self._lock_path.parent}"
            ) from exc
        self._lock_file = lock_file
        logger.debug("Acquired instance lock %s", self._lock_path)

    def release(self) -> None:
        # The lock file is left on disk; only the handle is closed.
        if self._lock_file is None:
            return
        try:
            if sys.platform == "win32":  # pragma: no cover - platform specific
                import msvcrt  # type: ignore

                self._lock_file.seek(0)
                with contextlib.suppress(OSError):
                    msvcrt.locking(self._lock_file.fileno(), msvcrt.LK_UNLCK, 1)
            else:  # pragma: no cover - exercised on non-Windows platforms
                import fcntl  # type: ignore

                with contextlib.suppress(OSError):
                    fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_file.close()
            self._lock_file = None

    def __enter__(self) -> "SingleInstanceGuard":
        self.acquire()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()


class SystemTrayController:
    """System tray icon with Reboot and Exit commands."""

    def __init__(self, app: "TranslatorApp") -> None:
        self._app = app
        self._icon: Optional["pystray.Icon"] = None

    @staticmethod
    def _is_supported() -> bool:
        return pystray is not None and MenuItem is not None and Image is not None and ImageDraw is not None

    def start(self) -> None:
        if not self._is_supported():
            logger.info("System tray icon is unavailable because pystray or Pillow is missing")
            return

        assert pystray is not None  # noqa: S101 - guarded by _is_supported
        menu = pystray.Menu(
            MenuItem("Reboot", self._on_reboot),
            MenuItem("Exit", self._on_exit),
        )
        self._icon = pystray.Icon("neuraltranslator", self._create_icon_image(), "NeuraL Translator", menu=menu)
        self._icon.run_detached()

    def stop(self) -> None:
        if self._icon is not None:
            self._icon.stop()
            self._icon = None

    def _on_exit(self, icon: "pystray.Icon", _: Any) -> None:
        self._app.stop()
        icon.stop()

    def _on_reboot(self, icon: "pystray.Icon", _: Any) -> None:
        self._app.reboot()
        icon.stop()

    def _create_icon_image(self) -> "Image.Image":
        assert Image is not None  # noqa: S101 - guarded by _is_supported

        icon_path = _resource_path("icon/neural_icon.png")
        if icon_path.exists():
            try:
                with Image.open(icon_path) as icon:
                    return icon.convert("RGBA")
            except OSError as exc:
                logger.warning("Failed to load tray icon %s: %s", icon_path, exc)

        assert ImageDraw is not None  # noqa: S101 - fallback icon requires drawing support
        size = 64
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        draw.ellipse((8, 8, size - 8, size - 8), fill=(88, 56, 196, 255))
        draw.rectangle((size // 2 - 4, 16, size // 2 + 4, size - 16), fill=(255, 255, 255, 255))
        return image


ListenerFactory = Callable[
    [Sequence[HotkeyBinding], DoubleTapDetector, "queue.Queue[Optional[HotkeyEvent]]"],
    BaseHotkeyService,
]


class TranslatorApp:
    """Listens for the double-tap gesture and translates the clipboard.

    Raw key callbacks feed the :class:`DoubleTapDetector`; confirmed gestures
    and the single-press shortcuts travel through a hotkey event queue to a
    dispatcher thread, which forwards every event to ``event_callback`` and
    queues clipboard translations for the worker pool.
    """

    def __init__(
        self,
        dest_language: str,
        source_language: Optional[str] = None,
        *,
        preferences: Optional[AppPreferences] = None,
        client_factory: Optional[Callable[[], OllamaClient]] = None,
        history_store: Optional[HistoryStore] = None,
        clipboard_module=pyperclip,
        keyboard_module: Any = None,
        time_provider: Callable[[], float] = time.monotonic,
        display_callback: Optional[Callable[[str, str, Optional[str]], None]] = None,
        event_callback: Optional[Callable[[str], None]] = None,
        hotkey_bindings: Optional[Sequence[HotkeyBinding]] = None,
        listener_factory: Optional[ListenerFactory] = None,
        workers: Optional[int] = None,
    ) -> None:
        if clipboard_module is None:
            raise RuntimeError(
                "The 'pyperclip' package is required. Install it with 'pip install pyperclip'."
            )
        self.preferences = preferences or AppPreferences()
        self.dest_language = dest_language
        self.source_language = source_language
        self._client: Optional[OllamaClient] = None
        self._client_factory = client_factory or (
            lambda: OllamaClient(self.preferences.client_settings())
        )
        self._client_lock = threading.Lock()
        self._history = history_store or HistoryStore(self.preferences.history_dir)
        self._clipboard = clipboard_module
        self._keyboard = keyboard_module
        self._time_provider = time_provider
        self._display_callback = display_callback
        self._event_callback = event_callback
        self._listener_factory = listener_factory
        self._worker_count = max(1, workers if workers is not None else self.preferences.workers)

        hotkeys = self.preferences.hotkeys
        self._detector = DoubleTapDetector(
            self._on_double_tap,
            min_interval=hotkeys["min_tap_interval"],
            max_interval=hotkeys["double_tap_timeout"],
            time_provider=time_provider,
        )
        if hotkey_bindings is not None:
            self._hotkey_bindings = list(hotkey_bindings)
        else:
            self._hotkey_bindings = build_bindings_from_preferences({"hotkeys": hotkeys})

        self._lock = threading.Lock()
        self._request_queue: "queue.Queue[TranslationJob]" = queue.Queue()
        self._hotkey_event_queue: "queue.Queue[Optional[HotkeyEvent]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._restart_event = threading.Event()
        self._worker_threads: List[threading.Thread] = []
        self._hotkey_dispatcher: Optional[threading.Thread] = None
        self._hotkey_service: Optional[BaseHotkeyService] = None
        self._tray_controller: Optional[SystemTrayController] = None
        self._language_options = list(LANGUAGE_SEQUENCE)
        self._last_original_text: Optional[str] = None
        self._last_translated_text: Optional[str] = None

    @property
    def detector(self) -> DoubleTapDetector:
        return self._detector

    @property
    def client(self) -> OllamaClient:
        with self._client_lock:
            if self._client is None:
                self._client = self._client_factory()
            client = self._client
        assert client is not None  # For type checkers
        return client

    def _reset_client(self) -> None:
        # Not closed here: a worker may still be using the old session.
        with self._client_lock:
            self._client = None

    # Lifecycle --------------------------------------------------------

    def start(self, *, tray_controller: Optional[SystemTrayController] = None) -> None:
        """Start listening for shortcuts and processing translations."""

        self._tray_controller = tray_controller

        while True:
            self._ensure_background_threads()
            self._hotkey_service = self._create_hotkey_service()
            if self._hotkey_service is not None:
                try:
                    self._hotkey_service.start()
                    logger.info("Hotkey service started with %s", self._hotkey_service.describe_bindings())
                except RuntimeError as exc:
                    logger.error("Failed to start hotkey service: %s", exc)
                    self._hotkey_service.stop()
                    self._hotkey_service = None

            logger.info("NeuraL Translator is running. Double press Ctrl+C on selected text to translate.")
            if self._tray_controller is not None:
                self._tray_controller.start()

            try:
                self._stop_event.wait()
            except KeyboardInterrupt:  # pragma: no cover - manual console interruption
                self.stop()
            finally:
                if self._tray_controller is not None:
                    self._tray_controller.stop()
                if self._hotkey_service is not None:
                    self._hotkey_service.stop()
                    logger.info("Hotkey service stopped")
                    self._hotkey_service = None

            if self._restart_event.is_set():
                self._restart_event.clear()
                self._stop_event.clear()
                self._detector.reset()
                continue

            break

    def stop(self) -> None:
        """Signal the application to shut down."""

        self._restart_event.clear()
        self._stop_event.set()
        if self._hotkey_dispatcher is not None and self._hotkey_dispatcher.is_alive():
            self._hotkey_event_queue.put(None)

    def reboot(self) -> None:
        """Restart the application loop with a fresh inference client."""

        self._reset_client()
        self._restart_event.set()
        self._stop_event.set()

    def _create_hotkey_service(self) -> Optional[BaseHotkeyService]:
        if not self._hotkey_bindings:
            logger.warning("No hotkey bindings available; global hotkeys are disabled")
            return None
        if self._listener_factory is not None:
            return self._listener_factory(self._hotkey_bindings, self._detector, self._hotkey_event_queue)
        return GlobalShortcutListener(
            self._hotkey_bindings,
            self._detector,
            self._hotkey_event_queue,
            keyboard_module=self._keyboard,
            time_provider=self._time_provider,
        )

    def _ensure_background_threads(self) -> None:
        self._worker_threads = [thread for thread in self._worker_threads if thread.is_alive()]
        while len(self._worker_threads) < self._worker_count:
            thread = threading.Thread(
                target=self._process_requests,
                name=f"TranslationWorker-{len(self._worker_threads) + 1}",
                daemon=True,
            )
            thread.start()
            self._worker_threads.append(thread)
        if self._hotkey_dispatcher is None or not self._hotkey_dispatcher.is_alive():
            self._hotkey_dispatcher = threading.Thread(
                target=self._dispatch_hotkey_events,
                name="HotkeyDispatcher",
                daemon=True,
            )
            self._hotkey_dispatcher.start()

    # Hotkey events ----------------------------------------------------

    def _on_double_tap(self, timestamp: float) -> None:
        self._hotkey_event_queue.put(HotkeyEvent(TRANSLATE_SHORTCUT_EVENT, timestamp))

    def _dispatch_hotkey_events(self) -> None:
        while True:
            event = self._hotkey_event_queue.get()
            if event is None:
                break
            try:
                self._process_hotkey_event(event)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                logger.exception("Error while processing hotkey event: %s", exc)

    def _process_hotkey_event(self, event: HotkeyEvent) -> None:
        if self._event_callback is not None:
            self._event_callback(event.name)

        if event.name == TRANSLATE_SHORTCUT_EVENT:
            self._handle_translate_shortcut()
        elif event.name == LANGUAGE_SWAP_EVENT:
            self._toggle_language()
        elif event.name == CLEAR_TEXT_EVENT:
            with self._lock:
                self._last_original_text = None
                self._last_translated_text = None
        elif event.name == COPY_RESULT_EVENT:
            self._copy_last_result()
        else:
            logger.debug("Unknown hotkey event: %s", event.name)

    def _handle_translate_shortcut(self) -> None:
        try:
            text = self._clipboard.paste()
        except Exception as exc:  # pragma: no cover - exercised via unit tests
            if pyperclip is not None and isinstance(exc, pyperclip.PyperclipException):
                message = f"Failed to read clipboard: {exc}"
            else:
                message = f"Unexpected error while accessing clipboard: {exc}"
            logger.error(message)
            return

        text = (text or "").strip()
        if text:
            self._request_queue.put(
                TranslationJob(text=text, src=self.source_language, dest=self.dest_language)
            )

    def _copy_last_result(self) -> None:
        with self._lock:
            translated = self._last_translated_text
        if not translated:
            return
        try:
            self._clipboard.copy(translated)
        except Exception as exc:  # pragma: no cover - depends on the platform clipboard
            logger.error("Failed to write clipboard: %s", exc)

    def _toggle_language(self) -> None:
        with self._lock:
            if self.source_language and self.dest_language:
                self.source_language, self.dest_language = self.dest_language, self.source_language
            else:
                try:
                    current_index = self._language_options.index(self.dest_language)
                except ValueError:
                    current_index = -1
                next_index = (current_index + 1) % len(self._language_options)
                self.dest_language = self._language_options[next_index]
            last_text = self._last_original_text
            src = self.source_language
            dest = self.dest_language
        save_dest_language(dest)
        self._enqueue_retranslation(last_text, src, dest)

    def _enqueue_retranslation(self, text: Optional[str], src: Optional[str], dest: Optional[str]) -> None:
        if not text or not dest:
            return
        self._request_queue.put(TranslationJob(text=text, src=src, dest=dest))

    # Translation workers ----------------------------------------------

    def _process_requests(self) -> None:
        while True:
            job = self._request_queue.get()
            try:
                self._process_single_request(job)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                logger.exception("Error while processing translation job: %s", exc)
            finally:
                self._request_queue.task_done()

    def _process_single_request(self, job: TranslationJob) -> None:
        with self._lock:
            self._last_original_text = job.text

        source = job.src or detect_language(job.text).language
        started = self._time_provider()
        try:
            result = self.client.translate(TranslationRequest(job.text, source, job.dest))
        except TranslationError as exc:
            self._render_translation(job.text, f"Error during translation: {exc}", source)
            return
        latency_ms = int(max(self._time_provider() - started, 0.0) * 1000)

        with self._lock:
            self._last_translated_text = result.translated_text
        try:
            self._history.append(
                job.text,
                result.translated_text,
                source,
                job.dest,
                ENGINE_NAME,
                latency_ms,
            )
        except HistoryError as exc:
            logger.error("Failed to save translation history: %s", exc)

        self._render_translation(job.text, result.translated_text, source)

    def _render_translation(self, original: str, translated: str, source: Optional[str]) -> None:
        if self._display_callback is not None:
            self._display_callback(original, translated, source)
        else:
            print(f"[{source or 'auto'} -> {self.dest_language}] {original}\n{translated}\n")


def parse_args(argv: Optional[Sequence[str]] = None, preferences: Optional[AppPreferences] = None) -> argparse.Namespace:
    prefs = preferences or AppPreferences()
    parser = argparse.ArgumentParser(description="Translate copied text with a local Ollama server after a double Ctrl+C.")
    parser.add_argument(
        "--dest",
        default=prefs.dest_language,
        help=f"Destination language (default: last saved or {prefs.dest_language}).",
    )
    parser.add_argument(
        "--src",
        default=prefs.source_language,
        help="Source language. Leave empty to auto-detect.",
    )
    parser.add_argument("--history-dir", default=prefs.history_dir, help="Directory holding the translation history.")
    parser.add_argument("--base-url", default=prefs.base_url, help="Ollama server address.")
    parser.add_argument("--workers", type=int, default=prefs.workers, help="Number of translation worker threads.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check whether the Ollama server has a suitable model and exit.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    preferences = load_preferences()
    args = parse_args(argv, preferences)
    configure_logging(getattr(logging, args.log_level))

    preferences.base_url = args.base_url
    preferences.history_dir = args.history_dir
    preferences.workers = max(1, args.workers)

    if args.check:
        client = OllamaClient(preferences.client_settings())
        try:
            healthy = client.check_health()
        finally:
            client.close()
        print("healthy" if healthy else "unavailable")
        return 0 if healthy else 1

    try:
        history = HistoryStore(preferences.history_dir)
        with SingleInstanceGuard(history.directory):
            save_dest_language(args.dest)
            app = TranslatorApp(
                dest_language=args.dest,
                source_language=args.src,
                preferences=preferences,
                history_store=history,
            )
            app.start(tray_controller=SystemTrayController(app))
    except SingleInstanceError as exc:
        print(f"NeuraL Translator is already running: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
