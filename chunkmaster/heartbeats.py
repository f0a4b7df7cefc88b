"""Tracking of chunk server heartbeats and handling of servers that stop sending them."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

from chunkmaster.types import ChunkHandle

log = logging.getLogger(__name__)

_MIN_CHECK_INTERVAL = 5.0


@dataclass
class ServerHeartbeat:
    server_id: Hashable
    address: str
    last_seen: float
    chunk_count: int = 0
    is_alive: bool = True


class HeartbeatManager:
    """Records heartbeats and declares servers failed once they fall silent.

    The attached master service must provide ``metadata_lock``, ``master``,
    ``gc_manager`` (or None), ``chunk_server_lock``, ``registered_servers``
    (a dict from server id to an object with an ``address``) and
    ``revoke_chunk_leases_for_server(address, reason)``.
    """

    def __init__(self, timeout: float, replication_factor: int) -> None:
        self.heartbeat_timeout = float(timeout)
        self.replication_factor = replication_factor
        self.check_interval = max(self.heartbeat_timeout / 6, _MIN_CHECK_INTERVAL)

        self._lock = threading.RLock()
        self._heartbeats: Dict[Hashable, ServerHeartbeat] = {}
        self._service = None
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def heartbeats(self) -> Dict[Hashable, ServerHeartbeat]:
        with self._lock:
            return dict(self._heartbeats)

    def attach(self, master_service) -> None:
        """Set the master service whose metadata this manager maintains."""
        self._service = master_service

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._monitor, name="heartbeat-monitor",
                                            daemon=True)
            self._thread.start()
        log.info("Heartbeat manager started (timeout: %ss, check interval: %ss)",
                 self.heartbeat_timeout, self.check_interval)

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            thread = self._thread
            self._thread = None
        self._stop_event.set()
        if thread is not None:
            thread.join()
        log.info("Heartbeat manager stopped")

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def _monitor(self) -> None:
        while not self._stop_event.wait(self.check_interval):
            self.check_missed_heartbeats()

    def record_heartbeat(self, server_id: Hashable, address: str, chunk_count: int,
                         processing_start: float) -> None:
        """Record that a server is alive; ``processing_start`` is an epoch time."""
        now = time.time()
        with self._lock:
            record = self._heartbeats.get(server_id)
            if record is not None:
                was_alive = record.is_alive
                record.last_seen = now
                record.chunk_count = chunk_count
                record.is_alive = True
                if not was_alive:
                    log.info("HEARTBEAT: Server %s (%s) recovered - reported %d chunks",
                             address, server_id, chunk_count)
            else:
                self._heartbeats[server_id] = ServerHeartbeat(
                    server_id=server_id, address=address, last_seen=now,
                    chunk_count=chunk_count, is_alive=True,
                )
                log.info("HEARTBEAT: New server %s (%s) registered - reported %d chunks",
                         address, server_id, chunk_count)
        log.debug("HEARTBEAT: Server %s (%s) - %d chunks, processed in %.6fs",
                  address, server_id, chunk_count, now - processing_start)

    def process_chunk_list(self, server_address: str,
                           reported_chunks: Iterable[str]) -> List[str]:
        """Return the reported chunks unknown to the master and hand them to GC."""
        service = self._service
        if service is None:
            return []

        orphaned: List[str] = []
        orphaned_handles: List[ChunkHandle] = []
        with service.metadata_lock:
            for text in reported_chunks:
                try:
                    handle = ChunkHandle.parse(text)
                except ValueError:
                    log.warning("HEARTBEAT: Invalid chunk handle from server %s: %s",
                                server_address, text)
                    continue
                if handle not in service.master.chunk_metadata:
                    orphaned.append(text)
                    orphaned_handles.append(handle)
                    log.info("HEARTBEAT: Orphaned chunk detected - server %s has chunk %s "
                             "not in master metadata", server_address, text)

        gc_manager = service.gc_manager
        if gc_manager is not None:
            for handle in orphaned_handles:
                gc_manager.mark_chunk_unreferenced(handle, 0, [server_address])

        if orphaned:
            log.info("HEARTBEAT: Found %d orphaned chunks on server %s",
                     len(orphaned), server_address)
        return orphaned

    def check_missed_heartbeats(self) -> List[Hashable]:
        """Mark silent servers as failed, handle their failure and return their ids."""
        now = time.time()
        failed: List[Hashable] = []
        with self._lock:
            for server_id, record in self._heartbeats.items():
                if not record.is_alive:
                    continue
                elapsed = now - record.last_seen
                if elapsed > self.heartbeat_timeout:
                    record.is_alive = False
                    failed.append(server_id)
                    log.warning("HEARTBEAT: Server %s (%s) missed heartbeat - marking as "
                                "failed (elapsed: %.1fs, timeout: %ss)",
                                record.address, server_id, elapsed, self.heartbeat_timeout)
                elif elapsed > self.heartbeat_timeout / 2:
                    log.info("HEARTBEAT: Server %s (%s) approaching timeout (elapsed: %.1fs)",
                             record.address, server_id, elapsed)

        for server_id in failed:
            self._handle_server_failure(server_id)
        return failed

    def _handle_server_failure(self, server_id: Hashable) -> None:
        service = self._service
        if service is None:
            return
        log.warning("HEARTBEAT: Handling server failure: %s", server_id)

        with service.chunk_server_lock:
            info = service.registered_servers.pop(server_id, None)
        if info is None:
            return
        address = info.address
        log.info("HEARTBEAT: Removed failed server %s (%s)", address, server_id)

        removed = self._remove_server_from_chunk_metadata(address)
        log.info("HEARTBEAT: Removed failed server %s from %d chunk locations",
                 address, removed)

        revoked = service.revoke_chunk_leases_for_server(address, "server failure")
        if revoked:
            log.info("HEARTBEAT: Revoked %d leases for failed server %s", revoked, address)

    def _remove_server_from_chunk_metadata(self, address: str) -> int:
        service = self._service
        removed = 0
        with service.metadata_lock:
            for handle, meta in service.master.chunk_metadata.items():
                remaining = [location for location in meta.locations if location != address]
                count = len(meta.locations) - len(remaining)
                if count:
                    removed += count
                    meta.locations = remaining
                    log.info("HEARTBEAT: Updated chunk %s locations: removed %s "
                             "(now has %d replicas)", handle, address, len(remaining))
                    if not remaining:
                        log.critical("HEARTBEAT: Chunk %s has NO replicas left!", handle)
        return removed

    def alive_servers(self) -> List[Hashable]:
        with self._lock:
            return [sid for sid, record in self._heartbeats.items() if record.is_alive]

    def server_stats(self) -> Tuple[int, int]:
        """Return the number of alive and of dead servers."""
        with self._lock:
            alive = sum(1 for record in self._heartbeats.values() if record.is_alive)
            return alive, len(self._heartbeats) - alive