"""Saved generation recipes, persisted as one JSON file in the data dir."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import List

from pydantic import TypeAdapter, ValidationError

from server.logging_utils import get_logger
from shared.errors import InvalidState, NotFound
from shared.schemas import SavedConfig

CONFIGS_FILENAME = "generation-configs.json"

_configs_adapter = TypeAdapter(List[SavedConfig])


class ConfigStore:
    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / CONFIGS_FILENAME
        self._lock = asyncio.Lock()
        self.slog = get_logger()

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write([])

    def _read(self) -> List[SavedConfig]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        try:
            return _configs_adapter.validate_json(raw)
        except ValidationError as exc:
            self.slog.error("config_store_unreadable", path=str(self.path), error=str(exc))
            return []

    def _write(self, configs: List[SavedConfig]) -> None:
        payload = [c.model_dump(mode="json", by_alias=True) for c in configs]
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    async def list(self) -> List[SavedConfig]:
        async with self._lock:
            return self._read()

    async def get(self, name: str) -> SavedConfig:
        for config in await self.list():
            if config.name == name:
                return config
        raise NotFound(f'Configuration "{name}" not found')

    async def add(self, config: SavedConfig) -> SavedConfig:
        async with self._lock:
            configs = self._read()
            if any(c.name == config.name for c in configs):
                raise InvalidState(f'Configuration "{config.name}" already exists')
            configs.append(config)
            self._write(configs)
        self.slog.info("config_saved", name=config.name, config_id=config.id)
        return config

    async def update(self, name: str, **changes) -> SavedConfig:
        async with self._lock:
            configs = self._read()
            for index, existing in enumerate(configs):
                if existing.name == name:
                    updated = existing.model_copy(update={k: v for k, v in changes.items() if v is not None})
                    configs[index] = updated
                    self._write(configs)
                    break
            else:
                raise NotFound(f'Configuration "{name}" not found')
        self.slog.info("config_updated", name=name, config_id=updated.id)
        return updated

    async def delete(self, name: str) -> None:
        async with self._lock:
            configs = self._read()
            remaining = [c for c in configs if c.name != name]
            if len(remaining) == len(configs):
                raise NotFound(f'Configuration "{name}" not found')
            self._write(remaining)
        self.slog.info("config_deleted", name=name)
