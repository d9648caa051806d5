"""
Durable record of the one payload that is waiting for a wallet signature.

The record survives a process restart so that an interrupted poll can be
resumed, or explicitly abandoned, the next time the gateway starts.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional
import asyncio
import json
import logging
import os
import tempfile

from pydantic import ValidationError

from .config import PENDING_CONTEXT_KEY, PENDING_PAYLOAD_KEY
from .models import PendingContext


logger = logging.getLogger(__name__)


class KeyValueStorage(ABC):
    """Async key-value storage in the shape of a device's local storage."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        pass


class MemoryStorage(KeyValueStorage):
    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileStorage(KeyValueStorage):
    """Keeps all keys in one JSON document, rewritten atomically on change."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable storage file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".pending-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def _remove(self, key: str) -> None:
        data = self._load()
        if key not in data:
            return
        del data[key]
        self._dump(data)

    async def get(self, key: str) -> Optional[str]:
        return (await asyncio.to_thread(self._load)).get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)


class ResumptionStore:
    """Single named slot holding the identifier of the pending payload.

    The flow context (payload kind, and for payments the funder session and
    payment parameters) lives under a second key so that a resumed payload is
    materialized the same way it would have been before the restart. The
    identifier slot stays authoritative: a context without an identifier is
    never read.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        key: str = PENDING_PAYLOAD_KEY,
        context_key: str = PENDING_CONTEXT_KEY,
    ) -> None:
        self.storage = storage
        self.key = key
        self.context_key = context_key

    async def get(self) -> Optional[str]:
        return await self.storage.get(self.key)

    async def get_context(self) -> Optional[PendingContext]:
        raw = await self.storage.get(self.context_key)
        if not raw:
            return None
        try:
            return PendingContext.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring unreadable context for the pending payload")
            return None

    async def set(self, identifier: str, context: Optional[PendingContext] = None) -> None:
        if context is None:
            await self.storage.remove(self.context_key)
        else:
            await self.storage.set(self.context_key, context.model_dump_json())
        await self.storage.set(self.key, identifier)

    async def clear(self) -> None:
        await self.storage.remove(self.key)
        await self.storage.remove(self.context_key)
