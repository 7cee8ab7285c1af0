"""File-backed repository implementations for runtime state."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Callable, Generic, List, Optional, TypeVar

import yaml

from ...io_utils import FileLock
from ..domain.models import TERMINAL_RUN_STATUSES, Run, now_iso
from .interfaces import EventRepository, RunRepository


T = TypeVar("T")


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        """Initialize the YamlCollectionRepo.

        Args:
            path (Path): YAML file path containing this repository collection.
            lock_path (Path): Lock file path used for cross-process synchronization.
            key (str): Top-level YAML key that stores serialized collection items.
            loader (Callable[[dict[str, Any]], T]): Callable converting raw dictionaries
                into domain models.
            dumper (Callable[[T], dict[str, Any]]): Callable converting domain models
                into dictionaries for persistence.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _save(self, items: list[T]) -> None:
        payload = {"version": 1, self._key: [self._dumper(item) for item in items]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)


class FileRunRepository(RunRepository):
    """YAML-backed repository for feature runs and their slots."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Run](
            path,
            lock_path,
            "runs",
            loader=Run.from_dict,
            dumper=lambda r: r.to_dict(),
        )

    def list(self) -> list[Run]:
        """Load all runs."""
        with self._repo._thread_lock:
            with self._repo._lock:
                return self._repo._load()

    def get(self, run_id: str) -> Optional[Run]:
        """Fetch a single run by identifier."""
        for run in self.list():
            if run.id == run_id:
                return run
        return None

    def upsert(self, run: Run) -> Run:
        """Insert or replace a run by id.

        A stored cancel request is kept even when ``run`` predates it.
        """
        with self._repo._thread_lock:
            with self._repo._lock:
                runs = self._repo._load()
                for idx, existing in enumerate(runs):
                    if existing.id == run.id:
                        run.cancel_requested = run.cancel_requested or existing.cancel_requested
                        runs[idx] = run
                        break
                else:
                    runs.append(run)
                self._repo._save(runs)
        return run

    def request_cancel(self, run_id: str) -> Optional[Run]:
        """Set the stored run's cancel flag in place; finished runs are returned unchanged."""
        with self._repo._thread_lock:
            with self._repo._lock:
                runs = self._repo._load()
                for run in runs:
                    if run.id == run_id:
                        if run.overall_status not in TERMINAL_RUN_STATUSES and not run.cancel_requested:
                            run.cancel_requested = True
                            self._repo._save(runs)
                        return run
        return None


class FileEventRepository(EventRepository):
    """JSONL-backed event stream repository."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileEventRepository.

        Args:
            path (Path): JSONL file path where event envelopes are appended.
            lock_path (Path): Lock file path used while writing or reading events.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, record: dict[str, Any]) -> dict[str, Any]:
        """Append one event envelope to the JSONL stream."""
        record.setdefault("ts", now_iso())
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record) + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        return record

    def _read_lines(self) -> List[str]:
        if not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    return list(handle)

    @staticmethod
    def _parse(lines: List[str]) -> List[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for line in lines:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events

    def list_for_run(self, run_id: str) -> list[dict[str, Any]]:
        """Read every event recorded for ``run_id`` ordered by sequence."""
        events = [event for event in self._parse(self._read_lines()) if event.get("run_id") == run_id]
        return sorted(events, key=lambda event: int(event.get("seq") or 0))


class FileConfigRepository:
    """YAML-backed repository for runtime configuration."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        """Load configuration from disk.

        Returns:
            dict[str, Any]: Configuration mapping from disk, or an empty mapping.
        """
        with self._thread_lock:
            with self._lock:
                if not self._path.exists():
                    return {}
                raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
                return raw if isinstance(raw, dict) else {}

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        """Persist configuration to disk atomically."""
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(config, handle, sort_keys=False)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self._path)
        return config
