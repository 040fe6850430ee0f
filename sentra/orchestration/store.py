from __future__ import annotations

import asyncio
import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class StateStore:
    """Snapshot persistence for resource windows and unresolved approval requests."""

    async def save_window(self, worker_id: str, snapshot: dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete_window(self, worker_id: str) -> None:
        raise NotImplementedError

    async def load_windows(self) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    async def save_request(self, request_id: str, snapshot: dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete_request(self, request_id: str) -> None:
        raise NotImplementedError

    async def load_requests(self) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["StateStore"]:
        try:
            yield self
        finally:
            await self.close()


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._windows: dict[str, dict[str, Any]] = {}
        self._requests: dict[str, dict[str, Any]] = {}

    async def save_window(self, worker_id: str, snapshot: dict[str, Any]) -> None:
        self._windows[worker_id] = json.loads(json.dumps(snapshot))

    async def delete_window(self, worker_id: str) -> None:
        self._windows.pop(worker_id, None)

    async def load_windows(self) -> dict[str, dict[str, Any]]:
        return {key: dict(value) for key, value in self._windows.items()}

    async def save_request(self, request_id: str, snapshot: dict[str, Any]) -> None:
        self._requests[request_id] = json.loads(json.dumps(snapshot))

    async def delete_request(self, request_id: str) -> None:
        self._requests.pop(request_id, None)

    async def load_requests(self) -> dict[str, dict[str, Any]]:
        return {key: dict(value) for key, value in self._requests.items()}


class FileStateStore(StateStore):
    """One JSON document per record under ``windows/`` and ``approvals/``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._windows_dir = self._root / "windows"
        self._requests_dir = self._root / "approvals"
        self._windows_dir.mkdir(parents=True, exist_ok=True)
        self._requests_dir.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    async def save_window(self, worker_id: str, snapshot: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self._windows_dir / f"{worker_id}.json", snapshot)

    async def delete_window(self, worker_id: str) -> None:
        await asyncio.to_thread(self._unlink, self._windows_dir / f"{worker_id}.json")

    async def load_windows(self) -> dict[str, dict[str, Any]]:
        return await asyncio.to_thread(self._read_all, self._windows_dir)

    async def save_request(self, request_id: str, snapshot: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self._requests_dir / f"{request_id}.json", snapshot)

    async def delete_request(self, request_id: str) -> None:
        await asyncio.to_thread(self._unlink, self._requests_dir / f"{request_id}.json")

    async def load_requests(self) -> dict[str, dict[str, Any]]:
        return await asyncio.to_thread(self._read_all, self._requests_dir)

    @staticmethod
    def _write(path: Path, snapshot: dict[str, Any]) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    @staticmethod
    def _unlink(path: Path) -> None:
        path.unlink(missing_ok=True)

    @staticmethod
    def _read_all(directory: Path) -> dict[str, dict[str, Any]]:
        records: dict[str, dict[str, Any]] = {}
        for path in sorted(directory.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("state_record_unreadable", path=str(path), error=str(exc))
                continue
            if isinstance(payload, dict):
                records[path.stem] = payload
        return records


def build_state_store(settings: Settings) -> StateStore:
    if settings.persistence.enabled and settings.environment != "test":
        return FileStateStore(settings.persistence.state_dir)
    return InMemoryStateStore()


__all__ = ["FileStateStore", "InMemoryStateStore", "StateStore", "build_state_store"]
