"""Append-only JSONL output for opportunities, quotes and simulated executions."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from constants import DEFAULT_OUTPUT_DIR, OUTPUT_LAYOUT


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, Decimals, enums and datetimes into JSON-safe values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class JsonlRecordWriter:
    """Writes one JSON object per line into UTC-dated files.

    Every record gets a ``sequence`` that increases across all record kinds.
    Writes go through a thread pool so the event loop never blocks on disk.
    """

    def __init__(
        self,
        output_dir: Path | str = Path(DEFAULT_OUTPUT_DIR),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.output_dir = Path(output_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._sequence = self._last_sequence()

    def path_for(self, kind: str, day: date) -> Path:
        try:
            subdir, prefix = OUTPUT_LAYOUT[kind]
        except KeyError:
            raise ValueError(f"unknown record kind '{kind}'") from None
        return self.output_dir / subdir / f"{prefix}_{day.isoformat()}.jsonl"

    @property
    def sequence(self) -> int:
        return self._sequence

    async def write(self, kind: str, record_type: str, entity: Any) -> int:
        payload = to_jsonable(entity)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._write_sync, kind, record_type, payload)

    def _write_sync(self, kind: str, record_type: str, payload: dict) -> int:
        now = self._clock()
        path = self.path_for(kind, now.astimezone(timezone.utc).date())
        with self._lock:
            self._sequence += 1
            line = {
                "sequence": self._sequence,
                "record_type": record_type,
                "written_at": to_jsonable(now),
                **payload,
            }
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(line, separators=(",", ":")) + "\n")
            return self._sequence

    async def fetch_recent(self, kind: str, limit: int = 10) -> list[dict]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_sync, kind, limit)

    def _fetch_recent_sync(self, kind: str, limit: int) -> list[dict]:
        subdir, prefix = OUTPUT_LAYOUT[kind]
        directory = self.output_dir / subdir
        if not directory.exists():
            return []
        records: list[dict] = []
        with self._lock:
            for path in sorted(directory.glob(f"{prefix}_*.jsonl"), reverse=True):
                lines = path.read_text(encoding="utf-8").splitlines()
                for line in reversed(lines):
                    if not line.strip():
                        continue
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
                    if len(records) >= limit:
                        return records
        return records

    def _last_sequence(self) -> int:
        # Newest file per kind, whatever its date, so a restart after midnight keeps counting.
        highest = 0
        for subdir, prefix in OUTPUT_LAYOUT.values():
            paths = sorted((self.output_dir / subdir).glob(f"{prefix}_*.jsonl"))
            if not paths:
                continue
            for line in reversed(paths[-1].read_text(encoding="utf-8").splitlines()):
                try:
                    highest = max(highest, int(json.loads(line).get("sequence", 0)))
                except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
                    continue
                break
        return highest
