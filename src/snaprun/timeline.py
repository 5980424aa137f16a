"""Per-run timeline of step start/ok/fail/skip events."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import TimelineEvent
from .store import write_atomic


LOGGER = logging.getLogger("snaprun.timeline")

STATUS_START = "start"
STATUS_OK = "ok"
STATUS_FAIL = "fail"
STATUS_SKIP = "skip"


def render_event(event: TimelineEvent) -> str:
    line = f"[{event.t / 1000:.2f}s] {event.step} → {event.status}"
    if event.message:
        line += f" ({event.message})"
    return line


class Timeline:
    """
    Buffers step events for one orchestration path and renders them to disk.

    ``flush`` always rewrites ``<base>.txt`` and ``<base>.json`` from the whole buffer,
    so flushing twice without new events leaves both files byte-identical.
    """

    def __init__(self, out_base: Path, phase: Optional[str] = None) -> None:
        self.out_base = Path(out_base)
        self.phase = phase
        self._started = time.monotonic()
        self._events: List[TimelineEvent] = []

    @property
    def events(self) -> List[TimelineEvent]:
        return list(self._events)

    @property
    def txt_path(self) -> Path:
        return self.out_base.with_name(self.out_base.name + ".txt")

    @property
    def json_path(self) -> Path:
        return self.out_base.with_name(self.out_base.name + ".json")

    def _push(self, step: str, status: str, message: Optional[str], meta: Optional[Dict[str, Any]]) -> TimelineEvent:
        elapsed = int((time.monotonic() - self._started) * 1000)
        event = TimelineEvent(t=elapsed, step=step, status=status, message=message, meta=meta)
        self._events.append(event)
        LOGGER.debug("%s", render_event(event))
        return event

    def start(self, step: str, message: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return self._push(step, STATUS_START, message, meta)

    def ok(self, step: str, message: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return self._push(step, STATUS_OK, message, meta)

    def fail(self, step: str, message: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return self._push(step, STATUS_FAIL, message, meta)

    def skip(self, step: str, message: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return self._push(step, STATUS_SKIP, message, meta)

    def render_text(self) -> str:
        return "\n".join(render_event(event) for event in self._events)

    def render_json(self) -> str:
        payload = [event.model_dump(mode="json", exclude_none=True) for event in self._events]
        return json.dumps(payload, indent=2, ensure_ascii=False)

    async def flush(self) -> None:
        """Atomically replace both renderings; a failed write is logged and the run continues."""
        text, payload = self.render_text(), self.render_json()
        try:
            await asyncio.to_thread(write_atomic, self.txt_path, text)
            await asyncio.to_thread(write_atomic, self.json_path, payload)
        except OSError as exc:
            LOGGER.warning("Could not flush timeline %s: %s", self.out_base, exc)

    @staticmethod
    def read_txt(out_base: Path) -> str:
        path = Path(out_base).with_name(Path(out_base).name + ".txt")
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    @staticmethod
    def read_json(out_base: Path) -> Optional[List[Dict[str, Any]]]:
        path = Path(out_base).with_name(Path(out_base).name + ".json")
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
