"""Progress store adapters.

``InMemoryProgressStore`` backs tests and single-process deployments.
``JsonFileProgressStore`` keeps one JSON document per user on disk, with
analytics events appended to a JSONL file next to them.
"""

import asyncio
import copy
import json
import logging
import re
from pathlib import Path
from typing import Any

from .ports import ProgressStoreError

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class InMemoryProgressStore:
    """Progress rows kept in a dictionary keyed by user id."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []

    async def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        user_id = record["user_id"]
        if user_id in self._rows:
            raise ProgressStoreError(f"Progress already exists for user {user_id}")
        self._rows[user_id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get(self, user_id: str) -> dict[str, Any] | None:
        row = self._rows.get(user_id)
        return copy.deepcopy(row) if row is not None else None

    async def update(self, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        row = self._rows.get(user_id)
        if row is None:
            raise ProgressStoreError(f"No progress for user {user_id}")
        row.update(copy.deepcopy(fields))
        return copy.deepcopy(row)

    async def append_event(self, event: dict[str, Any]) -> None:
        self.events.append(dict(event))

    async def delete(self, user_id: str) -> None:
        self._rows.pop(user_id, None)


class JsonFileProgressStore:
    """Progress rows stored as ``<directory>/<user_id>.json``.

    Args:
        directory: Directory holding progress files. Created on first write.
    """

    EVENTS_FILE = "events.jsonl"

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, user_id: str) -> Path:
        return self.directory / f"{_SAFE_NAME.sub('_', user_id)}.json"

    async def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        path = self._path(record["user_id"])
        if path.exists():
            raise ProgressStoreError(f"Progress already exists for user {record['user_id']}")
        await self._run(self._write, path, record)
        return dict(record)

    async def get(self, user_id: str) -> dict[str, Any] | None:
        path = self._path(user_id)
        if not path.exists():
            return None
        return await self._run(self._read, path)

    async def update(self, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        path = self._path(user_id)
        if not path.exists():
            raise ProgressStoreError(f"No progress for user {user_id}")
        row = await self._run(self._read, path)
        row.update(fields)
        await self._run(self._write, path, row)
        return row

    async def append_event(self, event: dict[str, Any]) -> None:
        await self._run(self._append_line, self.directory / self.EVENTS_FILE, event)

    async def delete(self, user_id: str) -> None:
        path = self._path(user_id)
        if path.exists():
            path.unlink()

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except (OSError, json.JSONDecodeError) as e:
            raise ProgressStoreError(str(e)) from e

    def _read(self, path: Path) -> dict[str, Any]:
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            raise json.JSONDecodeError("Progress file is not an object", str(path), 0)
        return data

    def _write(self, path: Path, row: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(row, indent=2))
        tmp.replace(path)

    def _append_line(self, path: Path, event: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
