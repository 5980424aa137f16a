"""File-backed persistence for run records, logs, metrics, diffs and patches."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import secrets
import string
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .config import PathsConfig
from .errors import InvalidLogNameError, InvalidRunIdError, PathEscapeError, RunNotFoundError
from .models import RunListItem, RunRecord, RunStepEntry, utcnow_iso


LOGGER = logging.getLogger("snaprun.store")

RUN_ID_RE = re.compile(r"[a-z0-9]+-[a-z0-9]+", re.I)
LOG_NAME_RE = re.compile(r"[a-z0-9._-]+", re.I)
_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_run_id() -> str:
    """Time-ordered base-36 millisecond prefix plus a random six character suffix."""
    prefix = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{suffix}"


def validate_run_id(run_id: str) -> str:
    if not isinstance(run_id, str) or not RUN_ID_RE.fullmatch(run_id):
        raise InvalidRunIdError(str(run_id))
    return run_id


def validate_log_name(name: str) -> str:
    if not isinstance(name, str) or not LOG_NAME_RE.fullmatch(name) or ".." in name:
        raise InvalidLogNameError(str(name))
    return name


def contained_path(base_dir: Path, file_name: str) -> Path:
    """Resolve *file_name* under *base_dir*, refusing anything that lands outside it."""
    base = Path(base_dir).resolve()
    full = (base / file_name).resolve()
    if full != base and base not in full.parents:
        raise PathEscapeError(base, full)
    return full


def step_entry(step_type: str, message: str, meta: Optional[Dict[str, Any]] = None) -> RunStepEntry:
    return RunStepEntry(type=step_type, message=message, ts=int(time.time() * 1000), meta=meta or {})


@dataclass
class _LockEntry:
    lock: asyncio.Lock
    users: int = 0


class KeyedLock:
    """FIFO mutex per key; entries disappear once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._entries: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry(lock=asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]


def write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)


def _read_optional(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


class RunStore:
    """
    Durable per-run JSON documents plus their logs, metrics, diff and patch files.

    Every read-modify-write of a run record goes through ``update_run``, which holds
    the run's lock for the whole cycle so concurrent callers never lose updates.
    """

    def __init__(self, paths: PathsConfig) -> None:
        self._paths = paths
        self._paths.ensure()
        self._locks = KeyedLock()

    @property
    def paths(self) -> PathsConfig:
        return self._paths

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    # -- path derivation -------------------------------------------------

    def run_file_path(self, run_id: str) -> Path:
        validate_run_id(run_id)
        return contained_path(self._paths.runs_dir, f"{run_id}.json")

    def metrics_file_path(self, run_id: str) -> Path:
        validate_run_id(run_id)
        return contained_path(self._paths.metrics_dir, f"{run_id}.json")

    def log_file_path(self, run_id: str, name: str) -> Path:
        validate_run_id(run_id)
        validate_log_name(name)
        return contained_path(self._paths.logs_dir, f"{run_id}.{name}.txt")

    def diff_file_path(self, run_id: str) -> Path:
        validate_run_id(run_id)
        return contained_path(self._paths.diffs_dir, f"{run_id}.diff")

    def patch_file_path(self, run_id: str) -> Path:
        validate_run_id(run_id)
        return contained_path(self._paths.patches_dir, f"{run_id}-patch.json")

    def artifacts_dir_for(self, run_id: str) -> Path:
        validate_run_id(run_id)
        return contained_path(self._paths.artifacts_dir, run_id)

    def timeline_base(self, run_id: str, phase: Optional[str] = None) -> Path:
        name = f"{phase}.timeline" if phase else "timeline"
        return contained_path(self.artifacts_dir_for(run_id), name)

    def backup_file_path(self, run_id: str, rel_path: str) -> Path:
        name = rel_path.replace("\\", "/").replace("/", "_") + ".before"
        return contained_path(self.artifacts_dir_for(run_id) / "backup", name)

    # -- run records -----------------------------------------------------

    async def create_run(self, record: RunRecord) -> RunRecord:
        path = self.run_file_path(record.run_id)
        record.artifacts_dir = str(self.artifacts_dir_for(record.run_id))
        record.metrics_path = str(self.metrics_file_path(record.run_id))
        async with self._locks.hold(record.run_id):
            await asyncio.to_thread(self.artifacts_dir_for(record.run_id).mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(write_atomic, path, self._dump(record))
        LOGGER.info("Created run %s for %s", record.run_id, record.repo_path)
        return record

    async def read_run(self, run_id: str) -> RunRecord:
        path = self.run_file_path(run_id)
        raw = await asyncio.to_thread(_read_optional, path)
        if raw is None:
            raise RunNotFoundError(run_id)
        return RunRecord.model_validate_json(raw)

    async def save_run(self, record: RunRecord) -> Path:
        """Overwrite a record wholesale; callers must already hold the run's lock."""
        path = self.run_file_path(record.run_id)
        record.last_updated_at = utcnow_iso()
        await asyncio.to_thread(write_atomic, path, self._dump(record))
        return path

    async def update_run(self, run_id: str, mutate: Callable[[RunRecord], Any]) -> RunRecord:
        """Apply *mutate* to the stored record under the run's lock and persist the result."""
        self.run_file_path(run_id)
        async with self._locks.hold(run_id):
            record = await self.read_run(run_id)
            mutate(record)
            await self.save_run(record)
            return record

    async def append_step(self, run_id: str, entry: RunStepEntry) -> RunRecord:
        return await self.update_run(run_id, lambda record: record.steps.append(entry))

    async def list_runs(self) -> List[RunListItem]:
        names = await asyncio.to_thread(lambda: sorted(p.name for p in self._paths.runs_dir.glob("*.json")))
        items: List[RunListItem] = []
        for file_name in names:
            run_id = file_name[: -len(".json")]
            prefix = run_id.split("-")[0]
            try:
                ts = int(prefix, 36) if prefix.isalnum() else 0
            except ValueError:
                ts = 0
            items.append(RunListItem(id=run_id, file=file_name, ts=ts))
        items.sort(key=lambda item: item.ts, reverse=True)
        return items

    # -- logs ------------------------------------------------------------

    async def write_log(self, run_id: str, name: str, content: Optional[str]) -> str:
        path = self.log_file_path(run_id, name)
        try:
            await asyncio.to_thread(write_atomic, path, content or "")
        except OSError as exc:
            LOGGER.warning("Could not write log %s for run %s: %s", name, run_id, exc)
        return str(path)

    async def read_log(self, run_id: str, name: str) -> Optional[str]:
        return await asyncio.to_thread(_read_optional, self.log_file_path(run_id, name))

    async def list_logs(self, run_id: str) -> Dict[str, str]:
        validate_run_id(run_id)
        prefix = f"{run_id}."

        def _scan() -> Dict[str, str]:
            found: Dict[str, str] = {}
            for path in sorted(self._paths.logs_dir.glob(f"{run_id}.*.txt")):
                found[path.name[len(prefix) : -len(".txt")]] = str(path)
            return found

        return await asyncio.to_thread(_scan)

    # -- metrics ---------------------------------------------------------

    async def write_metrics(self, run_id: str, metrics: Dict[str, Any]) -> str:
        path = self.metrics_file_path(run_id)
        try:
            await asyncio.to_thread(write_atomic, path, json.dumps(metrics, indent=2, default=str))
        except OSError as exc:
            LOGGER.warning("Could not write metrics for run %s: %s", run_id, exc)
        return str(path)

    async def read_metrics(self, run_id: str) -> Dict[str, Any]:
        raw = await asyncio.to_thread(_read_optional, self.metrics_file_path(run_id))
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Metrics for run %s are not valid JSON; starting fresh", run_id)
            return {}

    async def update_metrics(self, run_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.metrics_file_path(run_id)
        async with self._locks.hold(f"{run_id}#metrics"):
            metrics = await self.read_metrics(run_id)
            metrics.setdefault("runId", run_id)
            metrics.update(updates)
            await self.write_metrics(run_id, metrics)
            return metrics

    # -- diff & patch ----------------------------------------------------

    async def write_diff(self, run_id: str, diff: str) -> str:
        path = self.diff_file_path(run_id)
        await asyncio.to_thread(write_atomic, path, diff)
        return str(path)

    async def read_diff(self, run_id: str) -> Optional[str]:
        return await asyncio.to_thread(_read_optional, self.diff_file_path(run_id))

    async def save_patch(self, run_id: str, suggestions: List[Dict[str, Any]]) -> str:
        path = self.patch_file_path(run_id)
        await asyncio.to_thread(write_atomic, path, json.dumps(suggestions, indent=2))
        return str(path)

    async def read_patch(self, run_id: str) -> Optional[str]:
        return await asyncio.to_thread(_read_optional, self.patch_file_path(run_id))

    async def write_backup(self, run_id: str, rel_path: str, content: Optional[str]) -> str:
        """Keep the pre-apply contents of a repo file; a missing file is saved as empty."""
        path = self.backup_file_path(run_id, rel_path)
        await asyncio.to_thread(write_atomic, path, content or "")
        return str(path)

    @staticmethod
    def _dump(record: RunRecord) -> str:
        return json.dumps(record.to_json_dict(), indent=2)
