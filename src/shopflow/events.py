from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict


class JsonlEventSink:
    """Append-only ``events.jsonl`` for one run, safe to share between coroutines."""

    def __init__(self, base_dir: Path, verbose: bool = False):
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.base_dir / "events.jsonl"
        self._lock = asyncio.Lock()
        self.verbose = verbose

    async def write(self, record: Dict[str, Any]):
        record.setdefault("ts", time.time())
        line = json.dumps(record, ensure_ascii=False, default=str)
        async with self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        if not self.verbose:
            return
        ev = record.get("event")
        task = record.get("task_id")
        prefix = f"[task {task}]" if task else "[shopflow]"
        if ev == "run_start":
            print(f"{prefix} start: website={record.get('website')} query={record.get('query')!r} events={self.path}")
        elif ev == "step_complete":
            print(f"{prefix} step={record.get('step')} status={record.get('status')} duration_ms={record.get('duration_ms')}")
        elif ev == "step_failed":
            print(
                f"{prefix} step={record.get('step')} {record.get('status')} "
                f"{record.get('error')}: {record.get('message')}"
            )
        elif ev == "selection":
            print(f"{prefix} {record.get('outcome')} (result #{(record.get('index') or 0) + 1})")
        elif ev == "handoff":
            print(f"{prefix} switched to new tab {record.get('url')}")
        elif ev == "run_complete":
            print(f"{prefix} complete: status={record.get('status')} events={self.path}")

    def bind(self, **fields: Any):
        """Return a callback that writes records tagged with ``fields``."""

        async def _write(record: Dict[str, Any]) -> None:
            await self.write({**fields, **record})

        return _write

    def read(self):
        if not self.path.exists():
            return []
        records = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line:
                records.append(json.loads(line))
        return records


__all__ = ["JsonlEventSink"]
