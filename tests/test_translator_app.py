import queue
import tempfile
import threading
import unittest
import unittest.mock as mock
from pathlib import Path

from history_store import HistoryStore
from hotkey_manager import (
    CLEAR_TEXT_EVENT,
    COPY_RESULT_EVENT,
    LANGUAGE_SWAP_EVENT,
    TRANSLATE_SHORTCUT_EVENT,
    BaseHotkeyService,
    HotkeyEvent,
)
from translation_service import ServerConnectionError, TranslationResult
from translator_app import (
    LOCK_FILE_NAME,
    SingleInstanceError,
    SingleInstanceGuard,
    SystemTrayController,
    TranslationJob,
    TranslatorApp,
    parse_args,
)


class FakeTime:
    def __init__(self) -> None:
        self._value = 0.0

    def advance(self, amount: float) -> None:
        self._value += amount

    def now(self) -> float:
        return self._value


class FakeClipboard:
    def __init__(self, text: str = "") -> None:
        self.text = text

    def paste(self) -> str:
        return self.text

    def copy(self, text: str) -> None:
        self.text = text


class FakeKeyboard:
    def __init__(self) -> None:
        self.registered = {}
        self.removed = []

    def add_hotkey(self, combo, callback):
        self.registered[combo] = callback
        return combo

    def remove_hotkey(self, handle) -> None:
        self.registered.pop(handle, None)
        self.removed.append(handle)


class FakeClient:
    def __init__(self, translated: str = "こんにちは", fake_time: FakeTime = None) -> None:
        self.requests = []
        self.translated = translated
        self.fake_time = fake_time

    def translate(self, request):
        self.requests.append(request)
        if self.fake_time is not None:
            self.fake_time.advance(0.25)
        return TranslationResult(self.translated, "qwen2.5:3b")


class ErroringClient:
    def translate(self, request):
        raise ServerConnectionError("http://localhost:11434")


class FakeHotkeyService(BaseHotkeyService):
    def __init__(self, bindings, detector, event_queue) -> None:
        self.bindings = bindings
        self.detector = detector
        self.event_queue = event_queue
        self.started = 0
        self.stopped = 0

    def start(self) -> None:
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1

    def describe_bindings(self):
        return [binding.name for binding in self.bindings]


class TranslatorAppTestMixin:
    def _create_app(self, **overrides) -> TranslatorApp:
        fake_time = overrides.pop("fake_time", None) or FakeTime()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        defaults = dict(
            dest_language="ja",
            source_language=None,
            client_factory=lambda: FakeClient(),
            history_store=HistoryStore(tmp.name, time_provider=lambda: 1_700_000_000),
            keyboard_module=FakeKeyboard(),
            clipboard_module=FakeClipboard("hello"),
            time_provider=fake_time.now,
            display_callback=lambda original, translated, source: None,
            workers=1,
        )
        defaults.update(overrides)
        app = TranslatorApp(**defaults)
        app._fake_time = fake_time
        return app

    def _drain_hotkey_events(self, app: TranslatorApp) -> None:
        while True:
            try:
                event = app._hotkey_event_queue.get_nowait()
            except queue.Empty:
                return
            app._process_hotkey_event(event)


class TranslatorAppTests(TranslatorAppTestMixin, unittest.TestCase):
    def test_single_tap_does_not_enqueue(self):
        app = self._create_app()
        app.detector.handle_tap()
        self.assertTrue(app._hotkey_event_queue.empty())
        self.assertTrue(app._request_queue.empty())

    def test_double_tap_enqueues_clipboard_job(self):
        events = []
        app = self._create_app(clipboard_module=FakeClipboard("  hello  "), event_callback=events.append)
        app.detector.handle_tap()
        app._fake_time.advance(0.1)
        app.detector.handle_tap()

        self._drain_hotkey_events(app)

        self.assertEqual(events, [TRANSLATE_SHORTCUT_EVENT])
        job = app._request_queue.get_nowait()
        self.assertEqual(job, TranslationJob(text="hello", src=None, dest="ja"))

    def test_slow_taps_do_not_enqueue(self):
        app = self._create_app()
        app.detector.handle_tap()
        app._fake_time.advance(1.0)
        app.detector.handle_tap()
        self.assertTrue(app._hotkey_event_queue.empty())

    def test_empty_clipboard_is_ignored(self):
        app = self._create_app(clipboard_module=FakeClipboard("   "))
        app._process_hotkey_event(HotkeyEvent(TRANSLATE_SHORTCUT_EVENT, 0.0))
        self.assertTrue(app._request_queue.empty())

    def test_clipboard_error_does_not_enqueue_and_recovers(self):
        class LockedClipboard(FakeClipboard):
            def __init__(self) -> None:
                super().__init__("hello")
                self.locked = True

            def paste(self) -> str:
                if self.locked:
                    raise RuntimeError("clipboard locked")
                return super().paste()

        clipboard = LockedClipboard()
        app = self._create_app(clipboard_module=clipboard)

        with self.assertLogs("neuraltranslator.app", level="ERROR") as logs:
            app._process_hotkey_event(HotkeyEvent(TRANSLATE_SHORTCUT_EVENT, 0.0))
        self.assertTrue(app._request_queue.empty())
        self.assertIn("clipboard", logs.output[0].lower())

        clipboard.locked = False
        app._process_hotkey_event(HotkeyEvent(TRANSLATE_SHORTCUT_EVENT, 0.1))
        self.assertEqual(app._request_queue.get_nowait().text, "hello")

    def test_process_single_request_records_history(self):
        fake_time = FakeTime()
        client = FakeClient(translated="translated", fake_time=fake_time)
        captured = []

        def capture(original, translated, source):
            captured.append((original, translated, source))

        app = self._create_app(
            fake_time=fake_time,
            client_factory=lambda: client,
            display_callback=capture,
        )
        app._process_single_request(TranslationJob(text="hello", src=None, dest="ja"))

        self.assertEqual(client.requests[0].from_lang, "en")
        self.assertEqual(client.requests[0].to_lang, "ja")
        self.assertEqual(captured, [("hello", "translated", "en")])

        records = app._history.load()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].engine, "ollama")
        self.assertEqual(records[0].latency_ms, 250)
        self.assertEqual(records[0].from_language, "en")

    def test_process_single_request_handles_errors(self):
        captured = []

        def capture(original, translated, source):
            captured.append((original, translated, source))

        app = self._create_app(client_factory=lambda: ErroringClient(), display_callback=capture)
        app._process_single_request(TranslationJob(text="hello", src="en", dest="ja"))

        self.assertEqual(captured[0][0], "hello")
        self.assertIn("Error during translation", captured[0][1])
        self.assertIn("Cannot connect to Ollama server", captured[0][1])
        self.assertEqual(captured[0][2], "en")
        self.assertEqual(app._history.load(), [])

    def test_toggle_language_retranslates_last_text(self):
        app = self._create_app()
        app.source_language = "en"
        app.dest_language = "ja"
        app._process_single_request(TranslationJob(text="hello", src="en", dest="ja"))
        with mock.patch("translator_app.save_dest_language") as save_mock:
            app._process_hotkey_event(HotkeyEvent(LANGUAGE_SWAP_EVENT, 0.0))
        save_mock.assert_called_once_with("en")
        job = app._request_queue.get_nowait()
        self.assertEqual(job, TranslationJob(text="hello", src="ja", dest="en"))

    def test_toggle_language_cycles_destination_when_auto_detecting(self):
        app = self._create_app()
        with mock.patch("translator_app.save_dest_language"):
            app._toggle_language()
            self.assertEqual(app.dest_language, "en")
            app._toggle_language()
            self.assertEqual(app.dest_language, "ja")
        self.assertTrue(app._request_queue.empty())

    def test_copy_and_clear_events(self):
        clipboard = FakeClipboard("hello")
        app = self._create_app(clipboard_module=clipboard)
        app._process_single_request(TranslationJob(text="hello", src="en", dest="ja"))

        app._process_hotkey_event(HotkeyEvent(COPY_RESULT_EVENT, 0.0))
        self.assertEqual(clipboard.text, "こんにちは")

        clipboard.text = "other"
        app._process_hotkey_event(HotkeyEvent(CLEAR_TEXT_EVENT, 0.0))
        app._process_hotkey_event(HotkeyEvent(COPY_RESULT_EVENT, 0.0))
        self.assertEqual(clipboard.text, "other")

    def test_stop_sets_event(self):
        app = self._create_app()
        self.assertFalse(app._stop_event.is_set())
        app.stop()
        self.assertTrue(app._stop_event.is_set())

    def test_translate_is_safe_during_reboot(self):
        client = FakeClient()
        factory_started = threading.Event()
        allow_factory_to_finish = threading.Event()
        exceptions = []

        def blocking_factory() -> FakeClient:
            factory_started.set()
            allow_factory_to_finish.wait(timeout=1)
            return client

        app = self._create_app(client_factory=blocking_factory)

        def worker() -> None:
            try:
                app._process_single_request(TranslationJob(text="hello", src=None, dest="ja"))
            except Exception as exc:  # pragma: no cover - failure captured in assertions
                exceptions.append(exc)

        worker_thread = threading.Thread(target=worker)
        worker_thread.start()

        self.assertTrue(factory_started.wait(timeout=1), "client_factory was not invoked")

        reboot_thread = threading.Thread(target=app.reboot)
        reboot_thread.start()
        reboot_thread.join(0.01)
        self.assertTrue(
            reboot_thread.is_alive(),
            "reboot() should wait until client initialization has finished",
        )

        allow_factory_to_finish.set()

        worker_thread.join()
        reboot_thread.join()

        if exceptions:
            raise exceptions[0]

        self.assertEqual(len(client.requests), 1)

    def test_reboot_resets_client_and_requests_restart(self):
        clients = []

        def factory() -> FakeClient:
            client = FakeClient(translated=f"translated-{len(clients)}")
            clients.append(client)
            return client

        app = self._create_app(client_factory=factory)

        job = TranslationJob(text="hello", src=None, dest="ja")
        app._process_single_request(job)
        self.assertEqual(len(clients), 1, "client_factory should have been called once")

        app.reboot()

        self.assertTrue(app._restart_event.is_set())
        self.assertTrue(app._stop_event.is_set())

        app._restart_event.clear()
        app._stop_event.clear()

        app._process_single_request(job)
        self.assertEqual(len(clients), 2, "reboot should clear cached client")
        self.assertIsNot(clients[0], clients[1])


class TranslatorAppLifecycleTests(TranslatorAppTestMixin, unittest.TestCase):
    def _fake_tray(self, ready: threading.Event):
        class FakeTrayController:
            def __init__(self) -> None:
                self.start_calls = 0
                self.stop_calls = 0

            def start(self) -> None:
                self.start_calls += 1
                ready.set()

            def stop(self) -> None:
                self.stop_calls += 1

        return FakeTrayController()

    def test_stop_after_reboot_exits_start_loop(self):
        services = []

        def listener_factory(bindings, detector, event_queue):
            service = FakeHotkeyService(bindings, detector, event_queue)
            services.append(service)
            return service

        app = self._create_app(listener_factory=listener_factory)
        ready = threading.Event()
        tray = self._fake_tray(ready)

        thread = threading.Thread(target=lambda: app.start(tray_controller=tray))
        thread.start()
        try:
            self.assertTrue(ready.wait(timeout=1), "App did not reach running state in time")
            self.assertEqual(services[0].started, 1)
            self.assertIs(services[0].detector, app.detector)

            ready.clear()
            app.reboot()
            self.assertTrue(ready.wait(timeout=1), "App did not restart after reboot")
            self.assertEqual(tray.start_calls, 2)
            app.stop()

            thread.join(timeout=1)
            self.assertFalse(thread.is_alive(), "App should exit after stop following reboot")
            self.assertTrue(all(service.stopped == 1 for service in services))
        finally:
            app.stop()
            thread.join(timeout=1)

    def test_keyboard_listener_routes_events_to_dispatcher(self):
        keyboard = FakeKeyboard()
        events = []
        received = threading.Event()

        def on_event(name: str) -> None:
            events.append(name)
            received.set()

        app = self._create_app(keyboard_module=keyboard, event_callback=on_event)
        ready = threading.Event()
        thread = threading.Thread(target=lambda: app.start(tray_controller=self._fake_tray(ready)))
        thread.start()
        try:
            self.assertTrue(ready.wait(timeout=1), "App did not reach running state in time")
            clear_combo = next(b.combo for b in app._hotkey_bindings if b.name == "clear_text")
            keyboard.registered[clear_combo]()

            self.assertTrue(received.wait(timeout=1), "Hotkey event was not dispatched")
            self.assertEqual(events, [CLEAR_TEXT_EVENT])
        finally:
            app.stop()
            thread.join(timeout=1)
        self.assertEqual(keyboard.registered, {})


class SingleInstanceGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.history_dir = Path(tmp.name) / "history"

    def test_second_guard_on_same_history_is_refused(self) -> None:
        first = SingleInstanceGuard(self.history_dir)
        second = SingleInstanceGuard(self.history_dir)
        with first:
            self.assertEqual(first.lock_path.parent, self.history_dir)
            with self.assertRaises(SingleInstanceError) as ctx:
                second.acquire()
            self.assertIn(str(self.history_dir), str(ctx.exception))
            self.assertTrue(first.lock_path.exists())

        with second:
            pass

    def test_guards_on_different_histories_do_not_conflict(self) -> None:
        other_dir = self.history_dir.parent / "other"
        with SingleInstanceGuard(self.history_dir), SingleInstanceGuard(other_dir):
            self.assertTrue((other_dir / LOCK_FILE_NAME).exists())


class SystemTrayControllerTests(unittest.TestCase):
    def test_reboot_menu_item_triggers_reboot_and_stops_icon(self) -> None:
        class DummyApp:
            def __init__(self) -> None:
                self.reboot_called = False

            def reboot(self) -> None:
                self.reboot_called = True

        class DummyIcon:
            def __init__(self) -> None:
                self.stopped = False

            def stop(self) -> None:
                self.stopped = True

        dummy_app = DummyApp()
        controller = SystemTrayController(dummy_app)
        icon = DummyIcon()

        controller._on_reboot(icon, None)

        self.assertTrue(dummy_app.reboot_called)
        self.assertTrue(icon.stopped)


class ParseArgsTests(unittest.TestCase):
    def test_flags_override_preferences(self) -> None:
        args = parse_args(["--src", "en", "--dest", "de", "--workers", "3", "--check"])
        self.assertEqual(args.src, "en")
        self.assertEqual(args.dest, "de")
        self.assertEqual(args.workers, 3)
        self.assertTrue(args.check)

    def test_defaults(self) -> None:
        args = parse_args([])
        self.assertEqual(args.dest, "ja")
        self.assertIsNone(args.src)
        self.assertEqual(args.log_level, "INFO")


if __name__ == "__main__":  # pragma: no cover - allows direct execution
    unittest.main()
