from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from agentfleet.tasks import Task

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4000


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateStoreError(RuntimeError):
    """Raised when the state directory cannot be read or written."""


class StateStore:
    """One JSON document per namespace under a local state directory.

    A write lands in a temp file that then replaces the target, so readers
    never see half a document. Read-modify-write updates are serialized by an
    in-process lock; the directory belongs to a single agentfleet process.
    """

    NAMESPACES = {"history", "snapshot"}
    SCHEMA_VERSION = 2

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._guard = threading.Lock()

    def _file(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    def read(self, namespace: str, default: Any = None) -> Any:
        path = self._file(namespace)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return default
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return default
        except OSError as exc:
            raise StateStoreError(f"Cannot read {path}: {exc}") from exc
        # Documents are wrapped with a schema version; bare payloads are older files.
        if isinstance(raw, dict) and {"schema_version", "data"} <= raw.keys():
            return raw["data"]
        return raw

    def write(self, namespace: str, data: Any) -> None:
        with self._guard:
            self._write(namespace, data)

    def update(self, namespace: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        with self._guard:
            updated = updater(self.read(namespace, default))
            self._write(namespace, updated)
            return updated

    def _write(self, namespace: str, data: Any) -> None:
        path = self._file(namespace)
        document = {
            "schema_version": self.SCHEMA_VERSION,
            "updated_at": _utcnow_iso(),
            "data": data,
        }
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.state_dir,
                prefix=f".{namespace}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                json.dump(document, handle, ensure_ascii=False, indent=2)
                temp_path = handle.name
            os.replace(temp_path, path)
        except OSError as exc:
            raise StateStoreError(f"Cannot write {path}: {exc}") from exc


def _entries(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


class TaskHistory:
    """Finished-task records plus the periodic snapshot of every known task.

    ``entry_for`` and ``snapshot_payload`` read live task objects and belong on
    the event loop; ``store_entry`` and ``write_snapshot`` only touch disk and
    may run on a worker thread.
    """

    def __init__(self, store: StateStore, *, retention_hours: float = 168.0, limit: int = 500):
        self.store = store
        self.retention_hours = retention_hours
        self.limit = limit

    @staticmethod
    def entry_for(task: Task) -> dict[str, Any]:
        entry = task.to_record()
        entry["output_tail"] = task.output[-OUTPUT_TAIL_CHARS:]
        return entry

    def store_entry(self, entry: dict[str, Any]) -> None:
        def _replace(payload: Any) -> list[dict[str, Any]]:
            entries = [item for item in _entries(payload) if item.get("id") != entry.get("id")]
            entries.append(entry)
            return entries[-self.limit :] if self.limit > 0 else entries

        self.store.update("history", _replace, default=[])

    def record(self, task: Task) -> None:
        self.store_entry(self.entry_for(task))

    def entries(self) -> list[dict[str, Any]]:
        return _entries(self.store.read("history", default=[]))

    def load(self) -> list[Task]:
        cutoff = datetime.now(UTC) - timedelta(hours=self.retention_hours)
        tasks: list[Task] = []
        for entry in self.entries():
            stamp = entry.get("ended_at") or entry.get("created_at")
            if stamp and self.retention_hours > 0:
                try:
                    ended = datetime.fromisoformat(str(stamp))
                except ValueError:
                    ended = None
                if ended is not None and ended.tzinfo is None:
                    ended = ended.replace(tzinfo=UTC)
                if ended is not None and ended < cutoff:
                    continue
            tasks.append(Task.from_record(entry))
        return tasks

    def remove(self, task_id: str) -> bool:
        removed = False

        def _drop(payload: Any) -> list[dict[str, Any]]:
            nonlocal removed
            entries = _entries(payload)
            kept = [item for item in entries if item.get("id") != task_id]
            removed = len(kept) != len(entries)
            return kept

        self.store.update("history", _drop, default=[])
        return removed

    @staticmethod
    def snapshot_payload(tasks: Iterable[Task]) -> dict[str, Any]:
        records = []
        for task in tasks:
            record = task.to_record()
            record["queued_reason"] = task.queued_reason_text
            record["dependency_ids"] = list(task.dependency_ids)
            records.append(record)
        return {"taken_at": _utcnow_iso(), "tasks": records}

    def write_snapshot(self, payload: dict[str, Any]) -> None:
        self.store.write("snapshot", payload)

    def snapshot(self, tasks: Iterable[Task]) -> None:
        self.write_snapshot(self.snapshot_payload(tasks))

    def latest_snapshot(self) -> dict[str, Any]:
        payload = self.store.read("snapshot", default={})
        return payload if isinstance(payload, dict) else {}
