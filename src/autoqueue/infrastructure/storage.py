"""
Persistent store for configuration, items, history and queue state.

Every operation reads the full document, changes it and writes the full
document back. There is no partial update primitive: callers that need
derived values (counters) recompute them from the returned collection.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Iterable, Any

from pydantic import BaseModel, Field, ValidationError

from ..core.exceptions import StorageError
from ..core.models import PromptItem, QueueConfig, QueueState

logger = logging.getLogger(__name__)


class StoreDocument(BaseModel):
    """Everything the store holds, persisted as one JSON document."""

    config: QueueConfig = Field(default_factory=QueueConfig)
    items: List[PromptItem] = Field(default_factory=list)
    history: List[PromptItem] = Field(default_factory=list)
    queue_state: QueueState = Field(default_factory=QueueState)


class Storage(ABC):
    """
    Async key-value store with whole-collection semantics.

    Subclasses only implement loading and saving the document; the lock
    serializes read-modify-write cycles within this process.
    """

    def __init__(self, history_limit: int = 1000):
        self.history_limit = history_limit
        self._lock = asyncio.Lock()

    @abstractmethod
    async def _load(self) -> StoreDocument:
        ...

    @abstractmethod
    async def _save(self, document: StoreDocument) -> None:
        ...

    # ===== Config =====

    async def get_config(self) -> QueueConfig:
        async with self._lock:
            return (await self._load()).config

    async def set_config(self, **partial: Any) -> QueueConfig:
        async with self._lock:
            document = await self._load()
            document.config = _merge(QueueConfig, document.config, partial)
            await self._save(document)
            return document.config

    # ===== Items =====

    async def get_items(self) -> List[PromptItem]:
        async with self._lock:
            return (await self._load()).items

    async def set_items(self, items: Iterable[PromptItem]) -> None:
        async with self._lock:
            document = await self._load()
            document.items = list(items)
            await self._save(document)

    async def append_items(self, items: Iterable[PromptItem]) -> List[PromptItem]:
        """Append items at the end of the list (FIFO order)."""
        new_items = list(items)
        async with self._lock:
            document = await self._load()
            document.items.extend(new_items)
            await self._save(document)
        logger.debug(f"Appended {len(new_items)} items")
        return new_items

    async def update_item(self, item_id: str, **partial: Any) -> Optional[PromptItem]:
        """
        Apply a partial update to one item.

        Returns:
            The updated item, or None if no item has this id
        """
        async with self._lock:
            document = await self._load()
            for index, item in enumerate(document.items):
                if item.id == item_id:
                    updated = _merge(PromptItem, item, partial)
                    document.items[index] = updated
                    await self._save(document)
                    return updated
        logger.warning(f"update_item: no item with id {item_id}")
        return None

    async def delete_items(self, item_ids: Iterable[str]) -> int:
        """Remove items by id; returns how many were removed."""
        ids = set(item_ids)
        async with self._lock:
            document = await self._load()
            before = len(document.items)
            document.items = [item for item in document.items if item.id not in ids]
            removed = before - len(document.items)
            if removed:
                await self._save(document)
        return removed

    # ===== History =====

    async def get_history(self) -> List[PromptItem]:
        async with self._lock:
            return (await self._load()).history

    async def move_to_history(self, items: Iterable[PromptItem]) -> None:
        """Copy items to the front of the history, keeping at most history_limit."""
        entries = list(items)
        async with self._lock:
            document = await self._load()
            document.history = (list(reversed(entries)) + document.history)[:self.history_limit]
            await self._save(document)

    # ===== Queue state =====

    async def get_queue_state(self) -> QueueState:
        async with self._lock:
            return (await self._load()).queue_state

    async def set_queue_state(self, **partial: Any) -> QueueState:
        async with self._lock:
            document = await self._load()
            document.queue_state = _merge(QueueState, document.queue_state, partial)
            await self._save(document)
            return document.queue_state


def _merge(model_cls, current: BaseModel, partial: dict):
    """Re-validate a model with some fields replaced."""
    try:
        return model_cls.model_validate({**current.model_dump(), **partial})
    except ValidationError as e:
        raise StorageError(
            f"Invalid {model_cls.__name__} update: {e}",
            context={"fields": sorted(partial)}
        ) from e


class MemoryStorage(Storage):
    """In-process store; used for tests and throwaway runs."""

    def __init__(self, history_limit: int = 1000):
        super().__init__(history_limit)
        self._document = StoreDocument()

    async def _load(self) -> StoreDocument:
        # Hand out a copy so callers never mutate the stored document.
        return self._document.model_copy(deep=True)

    async def _save(self, document: StoreDocument) -> None:
        self._document = document.model_copy(deep=True)


class JsonFileStorage(Storage):
    """
    Store backed by a single JSON file.

    Writes go to a sibling temp file first and are then renamed over the
    target, so a crash never leaves a half-written document.
    """

    def __init__(self, path: Path, history_limit: int = 1000):
        super().__init__(history_limit)
        self.path = Path(path)

    async def _load(self) -> StoreDocument:
        if not self.path.exists():
            return StoreDocument()
        try:
            raw = self.path.read_text(encoding="utf-8")
            return StoreDocument.model_validate_json(raw) if raw.strip() else StoreDocument()
        except (OSError, ValidationError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Failed to read store: {e}",
                context={"path": str(self.path)}
            ) from e

    async def _save(self, document: StoreDocument) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(document.model_dump_json(indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(
                f"Failed to write store: {e}",
                context={"path": str(self.path)}
            ) from e
