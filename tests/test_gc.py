import stat
import threading
import time

import pytest

from chunkmaster.gc import GCManager
from chunkmaster.types import (
    ChunkHandle,
    ChunkMetadata,
    DFSError,
    Entry,
    EntryKey,
    Inode,
    Master,
    MasterConfig,
    ServiceState,
)


class FakeJournal:
    def __init__(self):
        self.deleted = []

    def log_delete_chunk(self, handle, inode_id, chunk_index):
        self.deleted.append((handle, inode_id, chunk_index))


class FakeService:
    def __init__(self, failing=(), deleter=True):
        self.config = MasterConfig(gc_interval=3600.0, orphaned_chunk_grace_period=0.0)
        self.master = Master()
        self.metadata_lock = threading.RLock()
        self.journal = FakeJournal()
        self.calls = []
        self.failing = set(failing)
        self.chunk_deleter = self._delete if deleter else None

    def _delete(self, address, handles):
        self.calls.append((address, list(handles)))
        if address in self.failing:
            raise ConnectionError(address)


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def gc(service):
    manager = GCManager(service)
    manager.throttle_delay = 0
    return manager


def _file_inode(ino, size=0, chunks=None):
    inode = Inode(ino=ino, size=size, chunks=dict(chunks or {}))
    inode.make_attr(stat.S_IFREG | 0o644, 0, 0)
    return inode


def test_mark_inode_for_deletion_records_stats(gc):
    gc.mark_inode_for_deletion(5, _file_inode(5, size=100, chunks={0: ChunkHandle.new()}))
    gc.mark_inode_for_deletion(6, _file_inode(6, size=50))
    stats = gc.stats()
    assert stats.deleted_inodes == 2
    assert stats.total_deleted_size == 150
    assert gc.deleted_inodes[5].chunk_count == 1


def test_mark_directory_inode(gc):
    inode = Inode(ino=9)
    inode.make_attr(stat.S_IFDIR | 0o755, 0, 0)
    gc.mark_inode_for_deletion(9, inode)
    assert gc.deleted_inodes[9].is_directory


def test_mark_missing_inode_uses_zeros(gc):
    gc.mark_inode_for_deletion(11, None)
    record = gc.deleted_inodes[11]
    assert (record.size, record.chunk_count, record.is_directory) == (0, 0, False)


def test_mark_chunk_unreferenced_copies_locations(gc):
    handle = ChunkHandle.new()
    locations = ["a:1", "b:2"]
    gc.mark_chunk_unreferenced(handle, 64, locations)
    locations.append("c:3")
    assert gc.unreferenced_chunks[handle].locations == ["a:1", "b:2"]
    assert gc.stats().total_unreferenced_size == 64


def test_delete_from_servers_majority(service, gc):
    handle = ChunkHandle.new()
    service.failing = {"c"}
    assert gc.delete_chunk_from_servers(handle, ["a", "b", "c"])
    service.failing = {"b", "c"}
    assert not gc.delete_chunk_from_servers(handle, ["a", "b", "c"])
    assert service.calls[0] == ("a", [str(handle)])


def test_delete_from_no_servers_succeeds(gc):
    assert gc.delete_chunk_from_servers(ChunkHandle.new(), [])


def test_delete_without_client_fails():
    manager = GCManager(FakeService(deleter=False))
    assert not manager.delete_chunk_from_servers(ChunkHandle.new(), ["a"])


def test_collect_finds_unreferenced_chunks(service, gc):
    used = ChunkHandle.new()
    orphan = ChunkHandle.new()
    service.master.chunk_metadata[used] = ChunkMetadata(locations=["a"])
    service.master.chunk_metadata[orphan] = ChunkMetadata(size=10, locations=["b"])
    service.master.metadata.insert(Entry(EntryKey(1, "f"), _file_inode(2, chunks={0: used})))

    gc.collect()

    assert set(gc.unreferenced_chunks) == {orphan}
    progress = gc.scan_progress()
    assert progress.total_chunks == 2
    assert progress.scanned_chunks == progress.total_chunks
    assert not progress.is_scanning
    assert progress.last_scan_end >= progress.last_scan_start


def test_collect_processes_deleted_inodes_after_grace(gc):
    gc.mark_inode_for_deletion(3, _file_inode(3))
    gc.collect()
    assert gc.stats().deleted_inodes == 0


def test_collect_keeps_deleted_inodes_within_grace(service):
    service.config.orphaned_chunk_grace_period = 3600.0
    manager = GCManager(service)
    manager.throttle_delay = 0
    manager.mark_inode_for_deletion(3, _file_inode(3))
    manager.collect()
    assert 3 in manager.deleted_inodes


def test_orphan_is_scheduled_then_deleted(service, gc):
    handle = ChunkHandle.new()
    gc.mark_chunk_unreferenced(handle, 0, ["a", "b"])

    gc.collect()
    chunk = gc.unreferenced_chunks[handle]
    assert chunk.marked_for_gc
    assert service.calls == []

    chunk.gc_scheduled = time.time() - 120
    gc.collect()
    assert handle not in gc.unreferenced_chunks
    assert {call[0] for call in service.calls} == {"a", "b"}
    assert service.journal.deleted == [(str(handle), 0, 0)]


def test_failed_deletion_keeps_chunk(service, gc):
    service.failing = {"a", "b"}
    handle = ChunkHandle.new()
    gc.mark_chunk_unreferenced(handle, 0, ["a", "b"])
    gc.collect()
    gc.unreferenced_chunks[handle].gc_scheduled = time.time() - 120
    gc.collect()
    assert handle in gc.unreferenced_chunks
    assert service.journal.deleted == []


def test_start_stop_lifecycle(gc):
    assert gc.state is ServiceState.UNKNOWN
    gc.start()
    try:
        assert gc.state is ServiceState.RUNNING
        with pytest.raises(DFSError):
            gc.start()
    finally:
        gc.stop()
    assert gc.state is ServiceState.STOPPED
    gc.stop()
    assert gc.state is ServiceState.STOPPED