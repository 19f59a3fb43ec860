import asyncio
from typing import Optional

import structlog
from pydantic import ValidationError

from config import Settings, get_settings
from models import Ledger
from storage import BlobStore, FileBlobStore, InMemoryBlobStore

logger = structlog.get_logger()


class PersistenceError(Exception):
    """Raised when a ledger snapshot could not be written."""


class LedgerRepository:
    """Snapshot persistence for the whole ledger.

    Every operation reads a fresh snapshot with ``load()`` and, if it mutated
    anything, writes the complete ledger back with ``save()``. There is no
    ledger kept in memory between calls.
    """

    def __init__(self, store: BlobStore):
        self.store = store
        self.lock = asyncio.Lock()

    async def _read_snapshot(self) -> Optional[Ledger]:
        try:
            data = await asyncio.to_thread(self.store.read)
        except OSError as e:
            logger.warning("Ledger snapshot unreadable", error=str(e))
            return None

        if data is None:
            logger.warning("Ledger snapshot not found")
            return None

        try:
            return Ledger.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Ledger snapshot corrupted", errors=e.error_count())
            return None

    async def load(self) -> Ledger:
        """Return the stored ledger, or an empty one if it is missing or corrupt."""
        ledger = await self._read_snapshot()
        if ledger is None:
            logger.warning("Initializing empty ledger")
            return Ledger()
        return ledger

    async def save(self, ledger: Ledger) -> None:
        """Persist the full ledger, replacing the previous snapshot."""
        data = ledger.model_dump_json().encode("utf-8")
        try:
            # Run blocking store I/O in the thread pool
            await asyncio.to_thread(self.store.write, data)
        except OSError as e:
            logger.error("Failed to save ledger snapshot", error=str(e))
            raise PersistenceError("Failed to save ledger snapshot") from e

        logger.debug("Ledger snapshot saved", accounts_count=len(ledger.accounts))

    async def init(self) -> None:
        """Store an empty ledger unless a valid snapshot already exists."""
        if await self._read_snapshot() is None:
            await self.save(Ledger())
            logger.info("Ledger initialized")

    async def get_accounts_count(self) -> int:
        ledger = await self.load()
        return len(ledger.accounts)

    def get_lock(self) -> asyncio.Lock:
        """Get the lock guarding the load-mutate-save sequence."""
        return self.lock


def create_blob_store(settings: Settings) -> BlobStore:
    if settings.storage_backend == "memory":
        return InMemoryBlobStore()
    return FileBlobStore(settings.ledger_path)


# Singleton instance (replaced in tests through reset_repositories)
_ledger_repo: Optional[LedgerRepository] = None


def get_ledger_repository() -> LedgerRepository:
    global _ledger_repo
    if _ledger_repo is None:
        _ledger_repo = LedgerRepository(create_blob_store(get_settings()))
    return _ledger_repo


# Para testes
def reset_repositories(store: Optional[BlobStore] = None) -> LedgerRepository:
    """Replace the ledger repository with a fresh one (for testing only)."""
    global _ledger_repo
    _ledger_repo = LedgerRepository(store if store is not None else InMemoryBlobStore())
    return _ledger_repo
