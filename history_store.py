"""Bounded translation history persisted as a single JSON document.

Every append reads, modifies and rewrites the whole file. That is fine for
the 1000 small records the store keeps, and it is the ceiling of this design:
do not raise ``MAX_RECORDS`` far without switching to an incremental format.
The store serializes its own operations with a lock but does not lock the
file, so only one process may write a given history directory.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
import tempfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union


logger = logging.getLogger("neuraltranslator.history")

HISTORY_FILE_NAME = "translation_history.json"
HISTORY_VERSION = "1.0"
MAX_RECORDS = 1000
MAX_LATENCY_MS = 2**32 - 1

PathLike = Union[str, "os.PathLike[str]"]


class HistoryError(RuntimeError):
    """Base class for history persistence failures."""


class CorruptHistoryError(HistoryError):
    """Raised when an existing history document cannot be parsed."""


class HistoryIOError(HistoryError):
    """Raised when the history file or directory cannot be read or written."""


class InvalidRecordError(HistoryError, ValueError):
    """Raised when a record passed to :meth:`HistoryStore.append` is malformed."""


@dataclass(frozen=True)
class HistoryRecord:
    id: str
    timestamp: int
    source_text: str
    translated_text: str
    from_language: str
    to_language: str
    engine: str
    latency_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: object) -> "HistoryRecord":
        if not isinstance(data, dict):
            raise CorruptHistoryError("History entry is not an object")
        try:
            record = cls(
                id=data["id"],
                timestamp=data["timestamp"],
                source_text=data["source_text"],
                translated_text=data["translated_text"],
                from_language=data["from_language"],
                to_language=data["to_language"],
                engine=data["engine"],
                latency_ms=data.get("latency_ms"),
            )
        except KeyError as exc:
            raise CorruptHistoryError(f"History entry is missing field {exc.args[0]!r}") from exc

        problem = record.problem()
        if problem is not None:
            raise CorruptHistoryError(f"History entry {problem}")
        return record

    def problem(self) -> Optional[str]:
        """Describe the first invalid field, or return ``None`` for a valid record."""

        for name in ("id", "source_text", "translated_text", "from_language", "to_language", "engine"):
            if not isinstance(getattr(self, name), str):
                return f"field {name!r} must be a string"
        if not _is_unsigned(self.timestamp):
            return "field 'timestamp' must be a non-negative integer"
        if self.latency_ms is not None and not (
            _is_unsigned(self.latency_ms) and self.latency_ms <= MAX_LATENCY_MS
        ):
            return f"field 'latency_ms' must be an integer between 0 and {MAX_LATENCY_MS}"
        return None


@dataclass
class HistoryDocument:
    version: str
    created_at: int
    updated_at: int
    records: List[HistoryRecord] = field(default_factory=list)

    @classmethod
    def empty(cls, timestamp: int) -> "HistoryDocument":
        return cls(version=HISTORY_VERSION, created_at=timestamp, updated_at=timestamp)

    def to_dict(self) -> dict:
        # The on-disk key is "translations", shared with the desktop front end.
        return {
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "translations": [record.to_dict() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: object) -> "HistoryDocument":
        if not isinstance(data, dict):
            raise CorruptHistoryError("History document is not an object")
        try:
            version = data["version"]
            created_at = data["created_at"]
            updated_at = data["updated_at"]
            entries = data["translations"]
        except KeyError as exc:
            raise CorruptHistoryError(f"History document is missing field {exc.args[0]!r}") from exc
        if not isinstance(version, str):
            raise CorruptHistoryError("History document field 'version' must be a string")
        if not _is_unsigned(created_at) or not _is_unsigned(updated_at):
            raise CorruptHistoryError("History document timestamps must be non-negative integers")
        if not isinstance(entries, list):
            raise CorruptHistoryError("History document field 'translations' must be a list")
        return cls(
            version=version,
            created_at=created_at,
            updated_at=updated_at,
            records=[HistoryRecord.from_dict(entry) for entry in entries],
        )


@dataclass(frozen=True)
class HistoryStats:
    count: int
    created_at: Optional[int]
    updated_at: Optional[int]
    version: Optional[str]

    def to_dict(self) -> dict:
        return {
            "total_translations": self.count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }


def _is_unsigned(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def default_history_directory() -> Path:
    """Return the per-user application data directory for this platform."""

    home = Path.home()
    if sys.platform == "darwin" or sys.platform == "win32":
        return home / "Documents" / "NeuraL"
    return home / ".local" / "share" / "NeuraL"


def generate_record_id(timestamp: int) -> str:
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


class HistoryStore:
    """Read/append/clear/summarize the history document of a directory.

    Each operation accepts ``directory`` to override the store's default
    directory for that call only.
    """

    def __init__(
        self,
        directory: Optional[PathLike] = None,
        *,
        max_records: int = MAX_RECORDS,
        time_provider: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory) if directory is not None else default_history_directory()
        self.max_records = max_records
        self._time_provider = time_provider
        self._lock = threading.Lock()

    def history_path(self, directory: Optional[PathLike] = None) -> Path:
        base = Path(directory) if directory is not None else self.directory
        return base / HISTORY_FILE_NAME

    def append(
        self,
        source_text: str,
        translated_text: str,
        from_language: str,
        to_language: str,
        engine: str,
        latency_ms: Optional[int] = None,
        *,
        directory: Optional[PathLike] = None,
    ) -> str:
        """Record a completed translation and return the new record id."""

        timestamp = int(self._time_provider())
        record = HistoryRecord(
            id=generate_record_id(timestamp),
            timestamp=timestamp,
            source_text=source_text,
            translated_text=translated_text,
            from_language=from_language,
            to_language=to_language,
            engine=engine,
            latency_ms=latency_ms,
        )
        problem = record.problem()
        if problem is not None:
            raise InvalidRecordError(f"Cannot save history entry: {problem}")
        path = self.history_path(directory)

        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise HistoryIOError(f"Failed to create history directory: {exc}") from exc

            document = self._read_document(path) or HistoryDocument.empty(timestamp)
            document.records.append(record)
            document.updated_at = timestamp
            overflow = len(document.records) - self.max_records
            if overflow > 0:
                del document.records[:overflow]
                logger.debug("Evicted %d oldest history record(s)", overflow)
            self._write_document(path, document)

        logger.debug("Saved history record %s", record.id)
        return record.id

    def load(
        self, limit: Optional[int] = None, *, directory: Optional[PathLike] = None
    ) -> List[HistoryRecord]:
        """Return records newest first, at most ``limit`` of them."""

        with self._lock:
            document = self._read_document(self.history_path(directory))
        if document is None:
            return []
        records = sorted(document.records, key=lambda record: record.timestamp, reverse=True)
        if limit is not None:
            records = records[: max(limit, 0)]
        return records

    def clear(self, *, directory: Optional[PathLike] = None) -> None:
        path = self.history_path(directory)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise HistoryIOError(f"Failed to delete history file: {exc}") from exc
        logger.info("Cleared translation history at %s", path)

    def stats(self, *, directory: Optional[PathLike] = None) -> HistoryStats:
        with self._lock:
            document = self._read_document(self.history_path(directory))
        if document is None:
            return HistoryStats(count=0, created_at=None, updated_at=None, version=None)
        return HistoryStats(
            count=len(document.records),
            created_at=document.created_at,
            updated_at=document.updated_at,
            version=document.version,
        )

    # Internal helpers -------------------------------------------------

    def _read_document(self, path: Path) -> Optional[HistoryDocument]:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            logger.error("History file %s is not valid UTF-8: %s", path, exc)
            raise CorruptHistoryError(f"Failed to decode history file: {exc}") from exc
        except OSError as exc:
            raise HistoryIOError(f"Failed to read history file: {exc}") from exc

        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("History file %s is not valid JSON: %s", path, exc)
            raise CorruptHistoryError(f"Failed to parse history file: {exc}") from exc
        try:
            return HistoryDocument.from_dict(data)
        except CorruptHistoryError as exc:
            logger.error("History file %s is malformed: %s", path, exc)
            raise

    def _write_document(self, path: Path, document: HistoryDocument) -> None:
        payload = json.dumps(document.to_dict(), indent=2, ensure_ascii=False)
        try:
            fd, temp_name = tempfile.mkstemp(prefix=".history-", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(temp_name, path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(temp_name)
                raise
        except OSError as exc:
            raise HistoryIOError(f"Failed to write history file: {exc}") from exc
