import asyncio
import json
import time
import pytest
from unittest.mock import patch

from models import Account, Ledger
from repositories import LedgerRepository, PersistenceError
from storage import BlobStore, FileBlobStore, InMemoryBlobStore


class FailingBlobStore(BlobStore):
    """Store whose writes always fail."""

    def __init__(self, data=None):
        self.data = data

    def read(self):
        return self.data

    def write(self, data):
        raise OSError("disk full")


class UnreadableBlobStore(BlobStore):
    def read(self):
        raise OSError("permission denied")

    def write(self, data):
        pass


def sample_ledger() -> Ledger:
    return Ledger(accounts={
        "a1": Account(id="a1", credential_hash="$2b$04$hash-one", balance=70.0),
        "b2": Account(id="b2", credential_hash="$2b$04$hash-two", balance=130.5),
    })


class TestSnapshotRoundTrip:
    """Test save/load of complete ledger snapshots."""

    @pytest.mark.asyncio
    async def test_save_then_load_returns_same_ledger(self):
        repo = LedgerRepository(InMemoryBlobStore())
        ledger = sample_ledger()

        await repo.save(ledger)

        assert await repo.load() == ledger

    @pytest.mark.asyncio
    async def test_save_replaces_previous_snapshot(self):
        repo = LedgerRepository(InMemoryBlobStore())
        await repo.save(sample_ledger())

        await repo.save(Ledger(accounts={
            "c3": Account(id="c3", credential_hash="$2b$04$hash-three", balance=1.0),
        }))

        loaded = await repo.load()
        assert list(loaded.accounts) == ["c3"]

    @pytest.mark.asyncio
    async def test_file_store_round_trip(self, tmp_path):
        path = tmp_path / "data" / "ledger.json"
        repo = LedgerRepository(FileBlobStore(str(path)))

        await repo.save(sample_ledger())

        assert path.exists()
        assert await LedgerRepository(FileBlobStore(str(path))).load() == sample_ledger()
        # Only the snapshot itself is left behind
        assert [p.name for p in path.parent.iterdir()] == ["ledger.json"]

    @pytest.mark.asyncio
    async def test_snapshot_holds_hashes_only(self):
        store = InMemoryBlobStore()
        await LedgerRepository(store).save(sample_ledger())

        payload = json.loads(store.data)
        assert set(payload["accounts"]["a1"]) == {"id", "credential_hash", "balance"}


class TestSnapshotRecovery:
    """Test fallback to an empty ledger when the snapshot is unusable."""

    @pytest.mark.asyncio
    async def test_missing_snapshot_loads_empty_ledger(self):
        repo = LedgerRepository(InMemoryBlobStore())

        assert await repo.load() == Ledger()

    @pytest.mark.asyncio
    async def test_missing_file_loads_empty_ledger(self, tmp_path):
        repo = LedgerRepository(FileBlobStore(str(tmp_path / "absent.json")))

        assert await repo.load() == Ledger()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [
        b"not json at all",
        b"\xff\xfe\x00",
        b'{"accounts": {"a1": {"id": "a1", "credential_hash": "x", "balance": -5}}}',
        b'{"accounts": {"a1": {"id": "zz", "credential_hash": "x", "balance": 5}}}',
        b'{"accounts": []}',
    ])
    async def test_corrupt_snapshot_loads_empty_ledger(self, data):
        repo = LedgerRepository(InMemoryBlobStore(data))

        assert await repo.load() == Ledger()

    @pytest.mark.asyncio
    async def test_unreadable_store_loads_empty_ledger(self):
        repo = LedgerRepository(UnreadableBlobStore())

        assert await repo.load() == Ledger()

    @pytest.mark.asyncio
    @patch('repositories.logger')
    async def test_recovery_is_logged(self, mock_logger):
        repo = LedgerRepository(InMemoryBlobStore(b"{broken"))

        await repo.load()

        mock_logger.warning.assert_called()


class TestInit:
    """Test ledger initialization at process start."""

    @pytest.mark.asyncio
    async def test_init_writes_empty_ledger_when_absent(self):
        store = InMemoryBlobStore()

        await LedgerRepository(store).init()

        assert json.loads(store.data) == {"accounts": {}}

    @pytest.mark.asyncio
    async def test_init_keeps_valid_snapshot(self):
        store = InMemoryBlobStore()
        repo = LedgerRepository(store)
        await repo.save(sample_ledger())

        await repo.init()

        assert await repo.load() == sample_ledger()

    @pytest.mark.asyncio
    async def test_init_replaces_corrupt_snapshot(self):
        store = InMemoryBlobStore(b"garbage")

        await LedgerRepository(store).init()

        assert json.loads(store.data) == {"accounts": {}}


class TestPersistenceFailure:
    """Test that failed writes surface as PersistenceError."""

    @pytest.mark.asyncio
    async def test_save_failure_raises(self):
        repo = LedgerRepository(FailingBlobStore())

        with pytest.raises(PersistenceError):
            await repo.save(sample_ledger())

    @pytest.mark.asyncio
    async def test_accounts_count(self):
        repo = LedgerRepository(InMemoryBlobStore())
        await repo.save(sample_ledger())

        assert await repo.get_accounts_count() == 2


class SlowBlobStore(InMemoryBlobStore):
    """In-memory store that blocks the calling thread on every access."""

    def read(self):
        time.sleep(0.2)
        return super().read()

    def write(self, data):
        time.sleep(0.2)
        super().write(data)


class TestNonBlockingIO:
    """Test that store access does not stall the event loop."""

    @pytest.mark.asyncio
    async def test_event_loop_keeps_running_during_save_and_load(self):
        repo = LedgerRepository(SlowBlobStore())
        gaps = []

        async def ticker():
            last = time.monotonic()
            while True:
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        task = asyncio.create_task(ticker())
        try:
            await repo.save(sample_ledger())
            loaded = await repo.load()
        finally:
            task.cancel()

        assert loaded == sample_ledger()
        assert len(gaps) > 10
        assert max(gaps) < 0.1
