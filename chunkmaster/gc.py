"""Lazy garbage collection of deleted inodes and unreferenced chunks."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from chunkmaster.types import ChunkHandle, DFSError, Inode, ServiceState

log = logging.getLogger(__name__)

_S_IFDIR = 0o040000
_DELETE_AFTER_SCHEDULED = 60.0
_STOP_TIMEOUT = 10.0


@dataclass
class DeletedInode:
    ino: int
    deleted_at: float
    size: int = 0
    chunk_count: int = 0
    is_directory: bool = False


@dataclass
class UnreferencedChunk:
    handle: ChunkHandle
    last_seen: float
    size: int = 0
    locations: List[str] = field(default_factory=list)
    marked_for_gc: bool = False
    gc_scheduled: float = 0.0


@dataclass
class ScanProgress:
    last_scan_start: float = 0.0
    last_scan_end: float = 0.0
    total_inodes: int = 0
    scanned_inodes: int = 0
    total_chunks: int = 0
    scanned_chunks: int = 0
    is_scanning: bool = False


@dataclass
class GCStats:
    deleted_inodes: int
    unreferenced_chunks: int
    total_deleted_size: int
    total_unreferenced_size: int
    last_scan_time: float
    is_scanning: bool


class GCManager:
    """Tracks deleted inodes and orphaned chunks and removes them after a grace period.

    The master service must provide ``config``, ``master``, ``metadata_lock``,
    ``journal`` (or None) and ``chunk_deleter`` (or None); the deleter is called
    as ``chunk_deleter(server_address, [handle_string])`` and raises on failure.
    """

    def __init__(self, master_service) -> None:
        config = master_service.config
        self._service = master_service
        self.gc_interval: float = config.gc_interval
        self.orphaned_chunk_grace_period: float = config.orphaned_chunk_grace_period
        self.max_chunks_per_scan = 1000
        self.throttle_delay = 0.1

        self._lock = threading.RLock()
        self._progress_lock = threading.Lock()
        self._deleted_inodes: Dict[int, DeletedInode] = {}
        self._unreferenced: Dict[ChunkHandle, UnreferencedChunk] = {}
        self._progress = ScanProgress()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = ServiceState.UNKNOWN

    @property
    def state(self) -> ServiceState:
        with self._lock:
            return self._state

    @property
    def deleted_inodes(self) -> Dict[int, DeletedInode]:
        with self._lock:
            return dict(self._deleted_inodes)

    @property
    def unreferenced_chunks(self) -> Dict[ChunkHandle, UnreferencedChunk]:
        with self._lock:
            return dict(self._unreferenced)

    def start(self) -> None:
        with self._lock:
            if self._state is ServiceState.RUNNING:
                raise DFSError("GC manager is already running")
            self._state = ServiceState.STARTING
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._loop, name="gc-manager", daemon=True)
            self._thread.start()
            self._state = ServiceState.RUNNING
        log.info("Garbage collection manager started with interval: %ss", self.gc_interval)

    def stop(self) -> None:
        with self._lock:
            if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
                return
            self._state = ServiceState.STOPPING
            thread = self._thread
        self._stop_event.set()
        if thread is not None:
            thread.join(_STOP_TIMEOUT)
            if thread.is_alive():
                log.warning("Garbage collection manager stop timeout exceeded")
        with self._lock:
            self._state = ServiceState.STOPPED
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self.gc_interval):
            self.collect()

    def _throttle(self) -> None:
        if self.throttle_delay > 0:
            self._stop_event.wait(self.throttle_delay)

    def mark_inode_for_deletion(self, ino: int, inode: Optional[Inode]) -> None:
        record = DeletedInode(ino=ino, deleted_at=time.time())
        if inode is not None:
            record.size = inode.size
            record.chunk_count = len(inode.chunks)
            record.is_directory = (inode.mode & _S_IFDIR) != 0
        else:
            log.warning("Marking inode %d for deletion without metadata", ino)
        with self._lock:
            self._deleted_inodes[ino] = record
        log.info("Marked inode %d for deletion (size: %d, chunks: %d)",
                 ino, record.size, record.chunk_count)

    def mark_chunk_unreferenced(self, handle: ChunkHandle, size: int,
                                locations: Iterable[str]) -> None:
        chunk = UnreferencedChunk(handle=handle, last_seen=time.time(), size=size,
                                  locations=list(locations))
        with self._lock:
            self._unreferenced[handle] = chunk
        log.info("Marked chunk %s as potentially unreferenced (size: %d)", handle, size)

    def scan_progress(self) -> ScanProgress:
        with self._progress_lock:
            return dataclasses.replace(self._progress)

    def stats(self) -> GCStats:
        with self._lock:
            deleted_size = sum(d.size for d in self._deleted_inodes.values())
            unreferenced_size = sum(c.size for c in self._unreferenced.values())
            with self._progress_lock:
                return GCStats(
                    deleted_inodes=len(self._deleted_inodes),
                    unreferenced_chunks=len(self._unreferenced),
                    total_deleted_size=deleted_size,
                    total_unreferenced_size=unreferenced_size,
                    last_scan_time=self._progress.last_scan_end,
                    is_scanning=self._progress.is_scanning,
                )

    def collect(self) -> None:
        """Run one full garbage collection cycle."""
        started = time.time()
        with self._progress_lock:
            self._progress.last_scan_start = started
            self._progress.is_scanning = True

        self._scan_for_unreferenced_chunks()
        self._process_deleted_inodes()
        self._delete_old_unreferenced_chunks()

        with self._progress_lock:
            self._progress.last_scan_end = time.time()
            self._progress.is_scanning = False
        log.info("Garbage collection cycle completed in %.3fs", time.time() - started)

    def _scan_for_unreferenced_chunks(self) -> None:
        service = self._service
        with service.metadata_lock:
            all_chunks = list(service.master.chunk_metadata)
        with self._progress_lock:
            self._progress.total_chunks = len(all_chunks)
            self._progress.scanned_chunks = 0

        referenced: Set[ChunkHandle] = set()
        with service.metadata_lock:
            for entry in service.master.metadata:
                if entry.inode is not None:
                    referenced.update(entry.inode.chunks.values())

        for handle in all_chunks:
            if self._stop_event.is_set():
                return
            if handle not in referenced:
                with service.metadata_lock:
                    meta = service.master.chunk_metadata.get(handle)
                if meta is not None:
                    self.mark_chunk_unreferenced(handle, meta.size, meta.locations)
            with self._progress_lock:
                self._progress.scanned_chunks += 1
            self._throttle()

    def _process_deleted_inodes(self) -> None:
        processed = 0
        with self._lock:
            for ino, record in list(self._deleted_inodes.items()):
                if self._stop_event.is_set():
                    return
                if time.time() - record.deleted_at >= self.orphaned_chunk_grace_period:
                    log.info("Processing deleted inode %d", ino)
                    del self._deleted_inodes[ino]
                    processed += 1
                self._throttle()
        if processed:
            log.info("Processed %d deleted inodes", processed)

    def _delete_old_unreferenced_chunks(self) -> None:
        deleted = 0
        with self._lock:
            for handle, chunk in list(self._unreferenced.items()):
                if self._stop_event.is_set():
                    return
                now = time.time()
                if now - chunk.last_seen >= self.orphaned_chunk_grace_period:
                    if not chunk.marked_for_gc:
                        chunk.marked_for_gc = True
                        chunk.gc_scheduled = now
                        log.info("Scheduled chunk %s for deletion", handle)
                    elif now - chunk.gc_scheduled >= _DELETE_AFTER_SCHEDULED:
                        if self.delete_chunk_from_servers(handle, chunk.locations):
                            self._journal_chunk_deletion(handle)
                            del self._unreferenced[handle]
                            deleted += 1
                            log.info("Deleted unreferenced chunk %s", handle)
                self._throttle()
        if deleted:
            log.info("Deleted %d unreferenced chunks", deleted)

    def _journal_chunk_deletion(self, handle: ChunkHandle) -> None:
        journal = self._service.journal
        if journal is None:
            return
        try:
            journal.log_delete_chunk(str(handle), 0, 0)
        except Exception as exc:  # journal failures must not stop collection
            log.error("Failed to log GC chunk deletion for %s: %s", handle, exc)

    def delete_chunk_from_servers(self, handle: ChunkHandle, locations: List[str]) -> bool:
        """Delete a chunk from its replicas; succeed if a majority agreed."""
        if not locations:
            return True
        succeeded = sum(1 for address in locations if self._delete_from_server(handle, address))
        return succeeded > len(locations) // 2

    def _delete_from_server(self, handle: ChunkHandle, address: str) -> bool:
        deleter = self._service.chunk_deleter
        if deleter is None:
            log.warning("GC: no chunk server client available")
            return False
        try:
            deleter(address, [str(handle)])
        except Exception as exc:
            log.warning("GC: failed to delete chunk %s from %s: %s", handle, address, exc)
            return False
        return True