"""Tests for the file-backed counter store."""

import asyncio
import hashlib
import json

import pytest

from quotagate.core.file_store import FileCounterStore
from quotagate.core.store import GuardedIncrement, IncrementOp
from quotagate.exceptions import StoreUnavailableError
from quotagate.services.quota_gate import QuotaConfig, QuotaGate


@pytest.fixture
def store(tmp_path, clock):
    return FileCounterStore(tmp_path / "counters", clock=clock)


def _counter_path(store: FileCounterStore, key: str):
    digest = hashlib.md5(key.encode()).hexdigest()
    return store.directory / digest[:2] / f"{digest}.counter"


class TestFileCounterStore:
    """Tests for FileCounterStore."""

    def test_creates_directory(self, tmp_path):
        FileCounterStore(tmp_path / "a" / "b")
        assert (tmp_path / "a" / "b").is_dir()

    @pytest.mark.asyncio
    async def test_missing_keys_read_as_none(self, store):
        assert await store.batch_get(["a"]) == {"a": None}

    @pytest.mark.asyncio
    async def test_increment_writes_sharded_json(self, store, clock):
        values = await store.batch_increment_and_expire([IncrementOp("gemini:ratelimit:day:1", 3, 60)])

        assert values == [3]
        path = _counter_path(store, "gemini:ratelimit:day:1")
        data = json.loads(path.read_text())
        assert data["value"] == 3
        assert data["expires_at"] == clock.now + 60
        assert data["created_at"] == clock.now

    @pytest.mark.asyncio
    async def test_increment_keeps_created_at(self, store, clock):
        await store.batch_increment_and_expire([IncrementOp("a", 1, 60)])
        created = clock.now
        clock.advance(30)
        await store.batch_increment_and_expire([IncrementOp("a", 1, 60)])

        data = json.loads(_counter_path(store, "a").read_text())
        assert data["value"] == 2
        assert data["created_at"] == created
        assert data["expires_at"] == clock.now + 60

    @pytest.mark.asyncio
    async def test_expired_counter_is_removed(self, store, clock):
        await store.batch_increment_and_expire([IncrementOp("a", 1, 10)])
        clock.advance(11)

        assert await store.batch_get(["a"]) == {"a": None}
        assert not _counter_path(store, "a").exists()

    @pytest.mark.asyncio
    async def test_unreadable_file_reads_raw(self, store):
        path = _counter_path(store, "a")
        path.parent.mkdir(parents=True)
        path.write_text("not json")

        assert await store.batch_get(["a"]) == {"a": "not json"}
        with pytest.raises(StoreUnavailableError):
            await store.batch_increment_and_expire([IncrementOp("a", 1, 60)])

    @pytest.mark.asyncio
    async def test_shared_between_instances(self, store, clock):
        other = FileCounterStore(store.directory, clock=clock)

        await store.batch_increment_and_expire([IncrementOp("a", 2, 60)])
        await other.batch_increment_and_expire([IncrementOp("a", 3, 60)])

        assert await store.batch_get(["a"]) == {"a": 5}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.batch_increment_and_expire([IncrementOp("a", 1, 60)])

        assert await store.delete(["a", "b"]) == 1
        assert await store.delete(["a"]) == 0

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.batch_increment_and_expire([IncrementOp("a", 1, 60), IncrementOp("b", 1, 60)])

        assert await store.clear() == 2
        assert await store.batch_get(["a", "b"]) == {"a": None, "b": None}

    @pytest.mark.asyncio
    async def test_check_and_increment(self, store):
        violation, current = await store.check_and_increment([
            GuardedIncrement("a", 1, 60, 1),
            GuardedIncrement("b", 5, 60, 4),
        ])
        assert violation == 1
        assert current == [0, 0]
        assert await store.batch_get(["a"]) == {"a": None}

        violation, _ = await store.check_and_increment([GuardedIncrement("a", 1, 60, 1)])
        assert violation is None
        assert await store.batch_get(["a"]) == {"a": 1}

    @pytest.mark.asyncio
    async def test_io_error_becomes_store_unavailable(self, store, monkeypatch):
        def broken(keys):
            raise PermissionError("read-only file system")

        monkeypatch.setattr(store, "_batch_get_sync", broken)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.batch_get(["a"])

        assert isinstance(exc_info.value.__cause__, PermissionError)
        assert exc_info.value.operation == "batch_get"

    @pytest.mark.asyncio
    async def test_atomic_check_over_corrupt_counter_writes_nothing(self, store):
        path = _counter_path(store, "b")
        path.parent.mkdir(parents=True)
        path.write_text("not json")

        with pytest.raises(StoreUnavailableError):
            await store.check_and_increment([
                GuardedIncrement("a", 1, 60, 10),
                GuardedIncrement("b", 1, 60, 10),
            ])

        assert await store.batch_get(["a"]) == {"a": None}

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, store, clock):
        await store.batch_increment_and_expire([IncrementOp("short", 1, 10), IncrementOp("long", 1, 100)])
        clock.advance(20)

        assert await store.cleanup_expired() == 1
        assert not _counter_path(store, "short").exists()
        assert _counter_path(store, "long").exists()


class TestQuotaGateOnFiles:
    """End-to-end gate behaviour over the file store."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("atomic", [False, True])
    async def test_tokens_per_minute(self, store, clock, atomic):
        gate = QuotaGate(
            store,
            QuotaConfig(requests_per_minute=100, tokens_per_minute=50, requests_per_day=1000),
            clock=clock,
            atomic=atomic,
        )

        result = await gate.check_and_increment(30)
        assert result.allowed is True
        assert result.current_tokens == 30

        result = await gate.check_and_increment(25)
        assert result.allowed is False
        assert "tokens per minute" in result.rejection_reason

        await gate.reset()
        usage = await gate.get_current_usage()
        assert usage.current_tokens == 0


class TestFileStoreRetention:
    """Rolled-over window buckets must not accumulate on disk."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("atomic", [False, True])
    async def test_expired_buckets_are_pruned(self, store, clock, atomic):
        gate = QuotaGate(
            store,
            QuotaConfig(requests_per_minute=10, tokens_per_minute=1000, requests_per_day=10000),
            clock=clock,
            atomic=atomic,
        )

        for _ in range(200):
            assert (await gate.check_and_increment(1)).allowed
            clock.advance(60)

        counter_files = list(store.directory.glob("*/*.counter"))
        assert len(counter_files) <= 8

    @pytest.mark.asyncio
    async def test_unreadable_files_are_not_pruned(self, store, clock):
        path = _counter_path(store, "odd")
        path.parent.mkdir(parents=True)
        path.write_text("not json")

        await store.batch_increment_and_expire([IncrementOp("a", 1, 10)])
        clock.advance(100)
        await store.batch_increment_and_expire([IncrementOp("b", 1, 10)])

        assert path.exists()
        assert not _counter_path(store, "a").exists()


class TestFileStoreConcurrency:
    """Several store handles on one directory racing for the same quota."""

    CONFIG = QuotaConfig(requests_per_minute=3, tokens_per_minute=100000, requests_per_day=1000)

    def _gates(self, tmp_path, clock, atomic, handles=4):
        return [
            QuotaGate(FileCounterStore(tmp_path / "shared", clock=clock), self.CONFIG, clock=clock, atomic=atomic)
            for _ in range(handles)
        ]

    @pytest.mark.asyncio
    async def test_atomic_mode_is_exact(self, tmp_path, clock):
        gates = self._gates(tmp_path, clock, atomic=True)

        results = await asyncio.gather(
            *(gate.check_and_increment(1) for gate in gates for _ in range(10))
        )

        assert sum(r.allowed for r in results) == self.CONFIG.requests_per_minute
        usage = await gates[0].get_current_usage()
        assert usage.current_requests == self.CONFIG.requests_per_minute

    @pytest.mark.asyncio
    async def test_two_phase_overshoot_is_bounded(self, tmp_path, clock):
        gates = self._gates(tmp_path, clock, atomic=False)
        racers = len(gates) * 10

        results = await asyncio.gather(
            *(gate.check_and_increment(1) for gate in gates for _ in range(10))
        )

        allowed = sum(r.allowed for r in results)
        usage = await gates[0].get_current_usage()
        # No increment is lost even when the limit is overshot
        assert usage.current_requests == allowed
        assert self.CONFIG.requests_per_minute <= allowed
        assert allowed <= self.CONFIG.requests_per_minute + racers - 1
