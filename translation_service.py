"""Client for a locally running Ollama inference server.

``OllamaClient`` tries an ordered list of candidate models one after another
and returns the first successful generation. The list encodes a preference;
the first entry is attempted on every call because the set of installed
models can change while the application is running.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import MaxRetryError, NewConnectionError

from language_detector import detect_language
from prompt_templates import build_improvement_prompt, build_translation_prompt


logger = logging.getLogger("neuraltranslator.translation")

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_CONNECT_TIMEOUT = 3.0
DEFAULT_READ_TIMEOUT = 60.0

RECOMMENDED_MODELS = (
    "aya:8b",
    "qwen2.5:3b",
    "llama3.3:8b-instruct",
    "llama3.1:8b",
    "gemma3:3b",
    "phi4-mini",
)

AUTO_LANGUAGE = "auto"


class TranslationError(RuntimeError):
    """Raised when the translation service cannot complete a request."""


class ServerConnectionError(TranslationError):
    """Raised when the inference server cannot be reached at all."""

    def __init__(self, base_url: str) -> None:
        super().__init__(
            f"Cannot connect to Ollama server at {base_url}. Please make sure Ollama is running."
        )
        self.base_url = base_url


class NoModelAvailableError(TranslationError):
    """Raised when the server is reachable but none of the candidate models answered."""

    def __init__(self, models: Sequence[str]) -> None:
        super().__init__(
            f"No suitable model available. Please install one of: {', '.join(models)}"
        )
        self.models = tuple(models)


class ResponseParseError(TranslationError):
    """Raised when the server answers with a body that is not a generation result."""


@dataclass(frozen=True)
class TranslationRequest:
    text: str
    from_lang: str
    to_lang: str


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    model: Optional[str] = None

    def to_dict(self) -> dict:
        return {"translated_text": self.translated_text}


@dataclass(frozen=True)
class GenerationOptions:
    """Decoding parameters sent with every generation request."""

    temperature: float = 0.3
    top_p: float = 0.9
    num_predict: int = 1024
    stop: tuple[str, ...] = ("\n\n", "Translation:", "Explanation:", "Note:", "Context:")

    def to_payload(self) -> dict:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "num_predict": self.num_predict,
            "stop": list(self.stop),
        }


@dataclass
class ClientSettings:
    base_url: str = DEFAULT_BASE_URL
    models: Sequence[str] = field(default_factory=lambda: RECOMMENDED_MODELS)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    options: GenerationOptions = field(default_factory=GenerationOptions)


def create_session(pool_size: int = 10) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def is_connect_failure(exc: requests.exceptions.RequestException) -> bool:
    """Return ``True`` only when no connection to the server could be opened.

    ``requests`` also raises ``ConnectionError`` for a connection that was
    opened and then dropped mid-request; those are per-model failures.
    """

    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    if not isinstance(exc, requests.exceptions.ConnectionError):
        return False
    reason = exc.args[0] if exc.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, NewConnectionError)


class OllamaClient:
    """Model-fallback client for the Ollama HTTP API.

    Calls for one request are strictly sequential. The underlying session is
    shared by every caller and holds the only mutable state (its connection
    pool), so concurrent ``translate`` calls from several threads are fine.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        if not self.settings.models:
            raise ValueError("At least one candidate model is required")
        self.base_url = self.settings.base_url.rstrip("/")
        self.models = tuple(self.settings.models)
        self._session = session if session is not None else create_session()

    @property
    def timeout(self) -> tuple[float, float]:
        return (self.settings.connect_timeout, self.settings.read_timeout)

    def close(self) -> None:
        self._session.close()

    def translate(self, request: TranslationRequest) -> TranslationResult:
        from_lang = request.from_lang
        if not from_lang or from_lang == AUTO_LANGUAGE:
            from_lang = detect_language(request.text).language
        logger.info("Starting translation: %s -> %s", from_lang, request.to_lang)
        prompt = build_translation_prompt(request.text, from_lang, request.to_lang)
        return self.generate(prompt)

    def translate_with_prompt(self, request: TranslationRequest) -> TranslationResult:
        """Send ``request.text`` to the server verbatim; it is already a full prompt."""

        logger.info("Starting prompt translation: %s -> %s", request.from_lang, request.to_lang)
        return self.generate(request.text)

    def improve_text(self, text: str, language: str) -> TranslationResult:
        return self.generate(build_improvement_prompt(text, language))

    def generate(self, prompt: str) -> TranslationResult:
        """Run ``prompt`` through the candidate models and return the first success.

        Raises :class:`ServerConnectionError` as soon as the server cannot be
        reached and :class:`NoModelAvailableError` once every candidate failed.
        """

        url = f"{self.base_url}/api/generate"
        for model in self.models:
            logger.debug("Trying model: %s", model)
            body = {
                "model": model,
                "prompt": prompt,
                "stream": False,
                "options": self.settings.options.to_payload(),
            }
            try:
                response = self._session.post(url, json=body, timeout=self.timeout)
            except requests.exceptions.RequestException as exc:
                if is_connect_failure(exc):
                    logger.error("Cannot connect for %s: %s", model, exc)
                    raise ServerConnectionError(self.base_url) from exc
                logger.warning("Request failed for %s: %s", model, exc)
                continue

            if not response.ok:
                logger.warning(
                    "API error for %s (%s): %s", model, response.status_code, response.text
                )
                continue

            try:
                translated = self._parse_generation(response)
            except ResponseParseError as exc:
                logger.warning("Failed to parse response for %s: %s", model, exc)
                continue

            logger.info("Translation successful with model: %s", model)
            return TranslationResult(translated_text=translated.strip(), model=model)

        raise NoModelAvailableError(self.models)

    @staticmethod
    def _parse_generation(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponseParseError("Response body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ResponseParseError("Response body is not a JSON object")
        text = payload.get("response")
        if not isinstance(text, str):
            raise ResponseParseError("Response body has no 'response' field")
        return text

    def check_health(self) -> bool:
        """Return ``True`` when the server is up and lists a candidate model.

        An unreachable server is reported as ``False``; it is a normal state.
        """

        return bool(self.available_models())

    def available_models(self) -> list[str]:
        """Return the candidate models whose names appear in the server catalog."""

        logger.debug("Checking Ollama health at: %s", self.base_url)
        try:
            response = self._session.get(f"{self.base_url}/api/tags", timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning("Cannot connect to Ollama: %s", exc)
            return []

        if not response.ok:
            logger.warning("Ollama API returned error: %s", response.status_code)
            return []

        catalog = response.text
        installed = [model for model in self.models if model in catalog]
        if installed:
            logger.info("Ollama is healthy; available models: %s", ", ".join(installed))
        else:
            logger.warning(
                "Ollama is running but no suitable translation models found. Install one of: %s",
                ", ".join(self.models),
            )
        return installed
