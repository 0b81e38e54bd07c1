from __future__ import annotations

import logging
import threading
from pathlib import Path

from .entry import SessionEntry, render_entry, render_header
from .identifiers import is_valid_identifier
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class SessionLogStore:
    """One append-only markdown log per identifier under ``data_dir``."""

    def __init__(self, data_dir: str | Path) -> None:
        self._data_dir = Path(data_dir).expanduser().resolve()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def initialize(self) -> bool:
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to create session log directory %s: %s", self._data_dir, exc)
            return False
        logger.info("Session log directory ready at %s", self._data_dir)
        return True

    def path_for(self, identifier: str) -> Path:
        if not is_valid_identifier(identifier):
            raise ValueError(f"Invalid identifier: {identifier!r}")
        return self._data_dir / f"{identifier}.md"

    def _lock_for(self, identifier: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identifier)
            if lock is None:
                lock = threading.Lock()
                self._locks[identifier] = lock
            return lock

    @staticmethod
    def _read(path: Path) -> str:
        with path.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def _create(self, identifier: str, path: Path) -> str:
        """Write the header with exclusive create; returns the log as it now is."""
        header = render_header(identifier, to_iso(utc_now()))
        try:
            with path.open("x", encoding="utf-8", newline="") as handle:
                handle.write(header)
        except FileExistsError:
            return self._read(path)
        logger.info("Created session log for %s", identifier)
        return header

    def load(self, identifier: str) -> str:
        path = self.path_for(identifier)
        try:
            try:
                return self._read(path)
            except FileNotFoundError:
                return self._create(identifier, path)
        except OSError as exc:
            raise StorageError(f"Failed to load history for {identifier}: {exc}") from exc

    def append(self, identifier: str, entry: SessionEntry) -> None:
        path = self.path_for(identifier)
        block = render_entry(entry)
        with self._lock_for(identifier):
            try:
                if not path.exists():
                    self._create(identifier, path)
                with path.open("a", encoding="utf-8", newline="") as handle:
                    handle.write(block)
            except OSError as exc:
                raise StorageError(f"Failed to save history for {identifier}: {exc}") from exc
