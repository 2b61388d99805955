"""
Async Storage Module

Async persistence contract for callers running on an event loop, with an
adapter over any synchronous StorageInterface. Data calls are bounded by a
timeout and raise StorageTimeoutError when they do not finish in time.
Begin, commit, rollback and close always run to completion, so a timed-out
call inside an atomic unit is still rolled back.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from decimal import Decimal
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
import asyncio
import functools

from .config import LedgerConfig, get_config
from .exceptions import StorageTimeoutError
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def increment(self, table: str, record_id: str, field: str, delta: Decimal) -> Decimal:
        """Atomically add delta to a numeric field"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    async def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self):
        """Context manager for atomic operations"""
        await self.begin_transaction()
        try:
            yield
            await self.commit()
        except Exception:
            await self.rollback()
            raise


class AsyncStorageAdapter(AsyncStorageInterface):
    """
    Runs a synchronous storage backend on one dedicated worker thread.

    The sync backends hold a thread-bound lock for the length of an atomic
    unit, so begin, commit and every call in between must run on the same
    thread. Only one async unit is open at a time.
    """

    def __init__(self, sync_storage: StorageInterface, timeout: Optional[float] = None,
                 config: Optional[LedgerConfig] = None):
        self.sync_storage = sync_storage
        config = config or get_config()
        self.timeout = timeout if timeout is not None else config.storage_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-storage")
        self._unit_lock = asyncio.Lock()

    async def _call(self, func, *args, bounded: bool = True):
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, functools.partial(func, *args))
        if not bounded:
            # Unit boundaries must run once queued, behind any call still on the worker
            return await asyncio.shield(future)
        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise StorageTimeoutError(
                f"Storage call {func.__name__} timed out after {self.timeout}s",
                details={"operation": func.__name__, "timeout": self.timeout}
            )

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._call(self.sync_storage.save, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._call(self.sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._call(self.sync_storage.load_all, table)

    async def delete(self, table: str, record_id: str) -> bool:
        return await self._call(self.sync_storage.delete, table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._call(self.sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        return await self._call(self.sync_storage.count, table)

    async def increment(self, table: str, record_id: str, field: str, delta: Decimal) -> Decimal:
        return await self._call(self.sync_storage.increment, table, record_id, field, delta)

    async def begin_transaction(self) -> None:
        await self._call(self.sync_storage.begin_transaction, bounded=False)

    async def commit(self) -> None:
        await self._call(self.sync_storage.commit, bounded=False)

    async def rollback(self) -> None:
        await self._call(self.sync_storage.rollback, bounded=False)

    @asynccontextmanager
    async def atomic(self):
        async with self._unit_lock:
            async with super().atomic():
                yield

    async def close(self) -> None:
        """Close the backend once every queued call has finished"""
        await self._call(self.sync_storage.close, bounded=False)
        self._executor.shutdown(wait=True)


def create_async_storage(storage_type: str = "memory", config: Optional[LedgerConfig] = None) -> AsyncStorageAdapter:
    """Build an async store over the in-memory or SQLite backend"""
    config = config or get_config()
    if storage_type == "sqlite":
        return AsyncStorageAdapter(SQLiteStorage(config.sqlite_path), config=config)
    if storage_type == "memory":
        return AsyncStorageAdapter(InMemoryStorage(), config=config)
    raise ValueError(f"Unknown storage type: {storage_type}")
