"""Conversation history store: durable per-conversation message logs.

Every conversation is stored as one JSON document named
``<conversation_id>.json``. Two backends exist (local directory and
S3-compatible object storage) behind the same interface. Persistence is
best-effort: ``save``/``delete`` log and swallow failures, ``load`` treats
missing or corrupt data as an empty history.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

import aiofiles
import aiofiles.os
import structlog

from taxassist.config import StorageConfig
from taxassist.core.types import Turn, history_from_dicts, history_to_dicts

logger = structlog.get_logger()

TEMP_DIR_NAME = "taxassist-history"


class HistoryStoreError(Exception):
    """A storage backend operation failed."""


class StorageInitError(HistoryStoreError):
    """A storage backend could not be initialized."""


def storage_key(conversation_id: str) -> str:
    """Object/file name for a conversation.

    Raises ValueError for ids that could escape the storage directory.
    """
    if not conversation_id or conversation_id in (".", ".."):
        raise ValueError("conversation id must be a non-empty name")
    if "/" in conversation_id or "\\" in conversation_id or "\x00" in conversation_id:
        raise ValueError(f"conversation id contains a path separator: {conversation_id!r}")
    return f"{conversation_id}.json"


def serialize_history(history: list[Turn]) -> str:
    return json.dumps(history_to_dicts(history), ensure_ascii=False)


def deserialize_history(body: str) -> list[Turn]:
    return history_from_dicts(json.loads(body))


class HistoryStore(ABC):
    """Save/load/delete conversation histories by conversation id."""

    name: str = "base"

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to the backend. Idempotent; called lazily by the others."""
        ...

    @abstractmethod
    async def save(self, conversation_id: str, history: list[Turn]) -> bool:
        """Overwrite the stored history. Returns False if it was not saved."""
        ...

    @abstractmethod
    async def load(self, conversation_id: str) -> list[Turn]:
        """Stored history, or [] if missing or unreadable."""
        ...

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Remove the stored history. Returns False only on backend failure."""
        ...


class BackendHistoryStore(HistoryStore):
    """Shared best-effort contract around raw backend reads and writes.

    Subclasses implement ``_initialize``, ``_read``, ``_write`` and
    ``_remove`` and let errors propagate; this class logs and absorbs them.
    """

    def __init__(self) -> None:
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            await self._initialize()
        except StorageInitError:
            raise
        except Exception as e:
            raise StorageInitError(f"{self.name} storage init failed: {e}") from e
        self._initialized = True
        logger.info("history_store_initialized", backend=self.name, location=self.location)

    async def save(self, conversation_id: str, history: list[Turn]) -> bool:
        try:
            await self.initialize()
            key = storage_key(conversation_id)
            await self._write(key, serialize_history(history))
        except Exception as e:
            logger.error(
                "history_save_failed",
                backend=self.name,
                conversation_id=conversation_id,
                error=str(e),
            )
            return False
        logger.info(
            "history_saved",
            backend=self.name,
            conversation_id=conversation_id,
            turns=len(history),
        )
        return True

    async def load(self, conversation_id: str) -> list[Turn]:
        try:
            await self.initialize()
            body = await self._read(storage_key(conversation_id))
            if body is None:
                logger.debug("history_not_found", backend=self.name, conversation_id=conversation_id)
                return []
            history = deserialize_history(body)
        except Exception as e:
            logger.warning(
                "history_load_failed",
                backend=self.name,
                conversation_id=conversation_id,
                error=str(e),
            )
            return []
        logger.debug(
            "history_loaded",
            backend=self.name,
            conversation_id=conversation_id,
            turns=len(history),
        )
        return history

    async def delete(self, conversation_id: str) -> bool:
        try:
            await self.initialize()
            existed = await self._remove(storage_key(conversation_id))
        except Exception as e:
            logger.error(
                "history_delete_failed",
                backend=self.name,
                conversation_id=conversation_id,
                error=str(e),
            )
            return False
        logger.info(
            "history_deleted",
            backend=self.name,
            conversation_id=conversation_id,
            existed=existed,
        )
        return True

    @property
    def location(self) -> str:
        return ""

    @abstractmethod
    async def _initialize(self) -> None: ...

    @abstractmethod
    async def _read(self, key: str) -> str | None:
        """Return the stored body, or None if the key does not exist."""
        ...

    @abstractmethod
    async def _write(self, key: str, body: str) -> None: ...

    @abstractmethod
    async def _remove(self, key: str) -> bool | None:
        """Delete the key; True if something was removed, None if unknown.

        Deleting a missing key is not an error.
        """
        ...


class LocalHistoryStore(BackendHistoryStore):
    """One JSON file per conversation in a local directory.

    If the configured directory cannot be created or written, the fallback
    directories are tried in order, then the process temp directory.
    """

    name = "local"

    def __init__(
        self,
        directory: Path | str,
        fallback_directories: list[Path | str] | None = None,
    ) -> None:
        super().__init__()
        self._candidates = [Path(directory)]
        self._candidates.extend(Path(d) for d in fallback_directories or [])
        self._candidates.append(Path(tempfile.gettempdir()) / TEMP_DIR_NAME)
        self.directory = self._candidates[0]

    @property
    def location(self) -> str:
        return str(self.directory)

    async def _initialize(self) -> None:
        last_error: Exception | None = None
        for candidate in self._candidates:
            try:
                candidate.mkdir(parents=True, exist_ok=True)
                if not os.access(candidate, os.W_OK):
                    raise PermissionError(f"directory is not writable: {candidate}")
            except OSError as e:
                last_error = e
                logger.warning(
                    "history_directory_unavailable",
                    directory=str(candidate),
                    error=str(e),
                )
                continue
            if candidate != self._candidates[0]:
                logger.warning(
                    "history_directory_fallback",
                    configured=str(self._candidates[0]),
                    using=str(candidate),
                )
            self.directory = candidate
            return
        raise StorageInitError(f"no writable history directory: {last_error}")

    def _path(self, key: str) -> Path:
        return self.directory / key

    async def _read(self, key: str) -> str | None:
        try:
            async with aiofiles.open(self._path(key), "r", encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def _write(self, key: str, body: str) -> None:
        path = self._path(key)
        tmp_path = path.with_name(f"{path.name}.{uuid4().hex[:8]}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(body)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            try:
                await aiofiles.os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise

    async def _remove(self, key: str) -> bool:
        try:
            await aiofiles.os.remove(self._path(key))
        except FileNotFoundError:
            return False
        return True


class FallbackHistoryStore(HistoryStore):
    """Uses ``primary`` unless it fails to initialize, then ``fallback`` for good.

    The switch happens once, on first use. Once in fallback mode the primary
    is never tried again for the lifetime of the process.
    """

    def __init__(self, primary: HistoryStore, fallback: HistoryStore) -> None:
        self.primary = primary
        self.fallback = fallback
        self._active: HistoryStore | None = None
        self._resolve_lock = asyncio.Lock()

    @property
    def name(self) -> str:  # type: ignore[override]
        return self._active.name if self._active else self.primary.name

    @property
    def active(self) -> HistoryStore | None:
        return self._active

    @property
    def using_fallback(self) -> bool:
        return self._active is self.fallback

    async def _resolve(self) -> HistoryStore:
        if self._active is not None:
            return self._active
        # Concurrent first calls wait for a single decision.
        async with self._resolve_lock:
            if self._active is not None:
                return self._active
            try:
                await self.primary.initialize()
            except Exception as e:
                logger.warning(
                    "history_store_fallback",
                    primary=self.primary.name,
                    fallback=self.fallback.name,
                    error=str(e),
                )
                self._active = self.fallback
            else:
                self._active = self.primary
            return self._active

    async def initialize(self) -> None:
        store = await self._resolve()
        await store.initialize()

    async def save(self, conversation_id: str, history: list[Turn]) -> bool:
        store = await self._resolve()
        return await store.save(conversation_id, history)

    async def load(self, conversation_id: str) -> list[Turn]:
        store = await self._resolve()
        return await store.load(conversation_id)

    async def delete(self, conversation_id: str) -> bool:
        store = await self._resolve()
        return await store.delete(conversation_id)


def create_history_store(config: StorageConfig) -> HistoryStore:
    """Build the configured store; cloud backends fall back to local."""
    local = LocalHistoryStore(config.get_local_path(), config.fallback_paths)
    if config.backend == "local":
        return local

    from taxassist.core.memory.s3_store import S3HistoryStore

    return FallbackHistoryStore(primary=S3HistoryStore(config.s3), fallback=local)
