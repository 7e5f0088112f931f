"""JSON state files with atomic replace-on-save."""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator

from filelock import FileLock

from .exceptions import StorageError

logger = logging.getLogger(__name__)


class JsonStateFile:
    """A JSON document persisted on every mutation.

    Saves write a sibling temp file and ``os.replace`` it over the target, so a
    crash mid-save leaves the previous document intact. ``lock`` serializes
    writers within a process. Documents shared between processes go through
    ``transaction()``, which also holds a sidecar file lock.
    """

    def __init__(self, path: str | Path, default_factory: Callable[[], Dict[str, Any]]) -> None:
        self.path = Path(path)
        self._default_factory = default_factory
        self.lock = threading.RLock()
        self._file_lock = FileLock(str(self.path.with_name(f".{self.path.name}.lock")))

    def load(self) -> Dict[str, Any]:
        """Read the document; a missing or unreadable file yields the default."""
        with self.lock:
            if not self.path.exists():
                logger.debug("State file %s does not exist yet", self.path)
                return self._default_factory()
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logger.error(f"Failed to load state file {self.path}: {exc}")
                return self._default_factory()
            if not isinstance(data, dict):
                logger.error("State file %s does not contain an object; ignoring it", self.path)
                return self._default_factory()
            return data

    def save(self, data: Dict[str, Any]) -> None:
        """Atomically replace the document with ``data``.

        Raises:
            StorageError: if the document cannot be written
        """
        with self.lock:
            tmp_path = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as tmp:
                    tmp_path = tmp.name
                    json.dump(data, tmp, indent=2, ensure_ascii=False)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_path, self.path)
                logger.debug("Saved state file %s", self.path)
            except (OSError, TypeError, ValueError) as exc:
                if tmp_path and os.path.exists(tmp_path):
                    try:
                        os.remove(tmp_path)
                    except OSError:
                        logger.debug("Could not remove temp file %s", tmp_path)
                raise StorageError(
                    f"Failed to save state: {exc}",
                    path=str(self.path),
                    suggestion="Check free disk space and directory permissions",
                ) from exc

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        """Yield a freshly loaded document and save it back if it was changed.

        Holds both the thread lock and the file lock for the whole block, so
        concurrent read-modify-save sequences from other processes are not lost.
        Nothing is saved when the block raises.
        """
        with self.lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._file_lock:
                data = self.load()
                before = copy.deepcopy(data)
                yield data
                if data != before:
                    self.save(data)
