"""Chunk leases: granting, renewal, handoff between primaries, revocation and expiry."""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from chunkmaster.types import ChunkHandle, DFSError, ServiceState

log = logging.getLogger(__name__)

DEFAULT_LEASE_RENEWAL_RATIO = 0.33
DEFAULT_LEASE_HANDOFF_GRACE_PERIOD = 2.0
_STOP_TIMEOUT = 10.0
_MIN_MONITOR_INTERVAL = 1.0
_MAX_MONITOR_INTERVAL = 30.0


class LeaseError(DFSError):
    """A lease operation was refused."""


class LeaseState(enum.Enum):
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class LeaseInfo:
    """A lease held by a primary chunk server; times are epoch seconds."""

    chunk_handle: ChunkHandle
    lease_id: str
    primary: str
    replicas: List[str]
    version: int
    granted_at: float
    expire_time: float
    renewable_after: float
    state: LeaseState = LeaseState.ACTIVE
    renewal_count: int = 0
    last_activity: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LeaseStats:
    total_leases: int = 0
    active_leases: int = 0
    expired_leases: int = 0
    revoked_leases: int = 0
    renewal_requests: int = 0
    successful_renewals: int = 0
    failed_renewals: int = 0
    handoff_requests: int = 0
    successful_handoffs: int = 0
    failed_handoffs: int = 0
    average_lease_lifetime: float = 0.0


@dataclass
class LeaseRequest:
    chunk_handle: ChunkHandle
    requesting_server: str
    replicas: List[str] = field(default_factory=list)
    version: int = 0
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class LeaseRenewalRequest:
    chunk_handle: ChunkHandle
    lease_id: str
    primary: str
    version: int = 0


@dataclass
class LeaseHandoffRequest:
    chunk_handle: ChunkHandle
    lease_id: str
    current_primary: str
    new_primary: str
    version: int = 0
    reason: str = ""


ExpiryCallback = Callable[[LeaseInfo], None]
HandoffCallback = Callable[[LeaseInfo, LeaseInfo], None]


def _fire(callback: Callable[..., None], *args: Any) -> None:
    threading.Thread(target=callback, args=args, daemon=True).start()


class LeaseManager:
    """Keeps one lease per chunk and moves leases through their states."""

    def __init__(self, timeout: float) -> None:
        self.lease_timeout = float(timeout)
        self.renewal_window = self.lease_timeout * DEFAULT_LEASE_RENEWAL_RATIO
        self.handoff_grace_period = DEFAULT_LEASE_HANDOFF_GRACE_PERIOD

        self._lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._leases: Dict[ChunkHandle, LeaseInfo] = {}
        self._stats = LeaseStats()
        self._expiry_callbacks: Dict[ChunkHandle, List[ExpiryCallback]] = {}
        self._handoff_callbacks: Dict[ChunkHandle, List[HandoffCallback]] = {}
        self._state = ServiceState.UNKNOWN
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.monitor_interval = min(
            max(self.lease_timeout / 10, _MIN_MONITOR_INTERVAL), _MAX_MONITOR_INTERVAL
        )

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    def is_running(self) -> bool:
        return self.state is ServiceState.RUNNING

    def start(self) -> None:
        with self._state_lock:
            if self._state is ServiceState.RUNNING:
                raise LeaseError("lease manager is already running")
            if self._state is ServiceState.STARTING:
                raise LeaseError("lease manager is already starting")
            self._state = ServiceState.STARTING
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._monitor, name="lease-monitor",
                                            daemon=True)
            self._thread.start()
            self._state = ServiceState.RUNNING
        log.info("Lease manager started with timeout: %ss, monitor interval: %ss",
                 self.lease_timeout, self.monitor_interval)

    def stop(self) -> None:
        with self._state_lock:
            if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
                return
            self._state = ServiceState.STOPPING
            thread = self._thread
        self._stop_event.set()
        if thread is not None:
            thread.join(_STOP_TIMEOUT)
            if thread.is_alive():
                log.warning("Lease manager stop timeout exceeded")
        with self._state_lock:
            self._state = ServiceState.STOPPED
            self._thread = None

    def _monitor(self) -> None:
        while not self._stop_event.wait(self.monitor_interval):
            self.process_lease_states()

    def _require_running(self) -> None:
        if not self.is_running():
            raise LeaseError("lease manager is not running")

    def _count(self, **increments: int) -> None:
        with self._stats_lock:
            for name, amount in increments.items():
                setattr(self._stats, name, getattr(self._stats, name) + amount)

    def _new_lease(self, handle: ChunkHandle, primary: str, replicas: List[str],
                   version: int, metadata: Optional[Dict[str, Any]]) -> LeaseInfo:
        now = time.time()
        return LeaseInfo(
            chunk_handle=handle,
            lease_id=str(uuid.uuid4()),
            primary=primary,
            replicas=list(replicas),
            version=version,
            granted_at=now,
            expire_time=now + self.lease_timeout,
            renewable_after=now + self.lease_timeout - self.renewal_window,
            state=LeaseState.ACTIVE,
            renewal_count=0,
            last_activity=now,
            metadata=dict(metadata or {}),
        )

    def grant_lease(self, request: LeaseRequest) -> LeaseInfo:
        self._require_running()
        if not request.requesting_server:
            raise LeaseError("requesting server cannot be empty")
        with self._lock:
            existing = self._leases.get(request.chunk_handle)
            if existing is not None:
                if existing.state is LeaseState.ACTIVE and time.time() < existing.expire_time:
                    raise LeaseError(
                        f"active lease already exists for chunk {request.chunk_handle} "
                        f"(primary: {existing.primary})"
                    )
                del self._leases[request.chunk_handle]
            lease = self._new_lease(request.chunk_handle, request.requesting_server,
                                    request.replicas, request.version, request.metadata)
            self._leases[request.chunk_handle] = lease
            self._count(total_leases=1, active_leases=1)
        log.info("Granted lease %s for chunk %s to primary %s",
                 lease.lease_id, request.chunk_handle, request.requesting_server)
        return lease

    def renew_lease(self, request: LeaseRenewalRequest) -> LeaseInfo:
        self._require_running()
        handle = request.chunk_handle
        with self._lock:
            self._count(renewal_requests=1)
            lease = self._leases.get(handle)
            now = time.time()
            problem = None
            if lease is None:
                problem = f"lease not found for chunk {handle}"
            elif lease.lease_id != request.lease_id:
                problem = f"lease ID mismatch for chunk {handle}"
            elif lease.primary != request.primary:
                problem = f"primary mismatch for chunk {handle} lease {request.lease_id}"
            elif now < lease.renewable_after:
                problem = (f"lease {request.lease_id} for chunk {handle} is not yet renewable")
            elif lease.state is LeaseState.EXPIRED or now > lease.expire_time:
                problem = f"lease {request.lease_id} for chunk {handle} has expired"
            if problem is not None:
                self._count(failed_renewals=1)
                raise LeaseError(problem)

            lease.expire_time = now + self.lease_timeout
            lease.renewable_after = now + self.lease_timeout - self.renewal_window
            lease.renewal_count += 1
            lease.last_activity = now
            lease.version = request.version
            self._count(successful_renewals=1)
        log.info("Renewed lease %s for chunk %s (renewal #%d)",
                 lease.lease_id, handle, lease.renewal_count)
        return lease

    def request_handoff(self, request: LeaseHandoffRequest) -> LeaseInfo:
        self._require_running()
        if request.current_primary == request.new_primary:
            raise LeaseError("current and new primary cannot be the same")
        handle = request.chunk_handle
        with self._lock:
            self._count(handoff_requests=1)
            old = self._leases.get(handle)
            problem = None
            if old is None:
                problem = f"lease not found for chunk {handle}"
            elif old.lease_id != request.lease_id or old.primary != request.current_primary:
                problem = "lease validation failed for handoff request"
            elif old.state is not LeaseState.ACTIVE:
                problem = "cannot handoff non-active lease"
            if problem is not None:
                self._count(failed_handoffs=1)
                raise LeaseError(problem)

            new = self._new_lease(handle, request.new_primary, old.replicas,
                                  request.version, old.metadata)
            new.metadata["handoff_reason"] = request.reason
            new.metadata["previous_primary"] = request.current_primary
            new.metadata["previous_lease_id"] = request.lease_id
            old.state = LeaseState.REVOKED
            self._leases[handle] = new
            for callback in self._handoff_callbacks.get(handle, []):
                _fire(callback, old, new)
            self._count(successful_handoffs=1)
        log.info("Completed lease handoff for chunk %s: %s->%s (reason: %s)",
                 handle, request.current_primary, request.new_primary, request.reason)
        return new

    def get_lease(self, handle: ChunkHandle) -> Optional[LeaseInfo]:
        """Return the lease if it is active and unexpired, otherwise None."""
        with self._lock:
            lease = self._leases.get(handle)
            if lease is None:
                return None
            now = time.time()
            if lease.state is LeaseState.ACTIVE and now < lease.expire_time:
                lease.last_activity = now
                return lease
            return None

    def _revoke(self, handle: ChunkHandle, lease: LeaseInfo, reason: str) -> None:
        lease.state = LeaseState.REVOKED
        lease.metadata["revocation_reason"] = reason
        lease.metadata["revoked_at"] = time.time()
        for callback in self._expiry_callbacks.get(handle, []):
            _fire(callback, lease)

    def revoke_lease(self, handle: ChunkHandle, reason: str) -> None:
        with self._lock:
            lease = self._leases.get(handle)
            if lease is None:
                raise LeaseError(f"lease not found for chunk {handle}")
            if lease.state is not LeaseState.ACTIVE:
                raise LeaseError(f"cannot revoke non-active lease for chunk {handle}")
            self._count(revoked_leases=1, active_leases=-1)
            self._revoke(handle, lease, reason)
        log.info("Revoked lease %s for chunk %s (reason: %s)", lease.lease_id, handle, reason)

    def revoke_all_for_server(self, server_address: str, reason: str) -> int:
        """Revoke every active lease whose primary is this server; return how many."""
        revoked = 0
        with self._lock:
            for handle, lease in self._leases.items():
                if lease.primary == server_address and lease.state is LeaseState.ACTIVE:
                    self._revoke(handle, lease, reason)
                    revoked += 1
            if revoked:
                self._count(revoked_leases=revoked, active_leases=-revoked)
        if revoked:
            log.info("Revoked %d leases for server %s", revoked, server_address)
        return revoked

    def is_renewable(self, handle: ChunkHandle, lease_id: str) -> bool:
        with self._lock:
            lease = self._leases.get(handle)
            if lease is None or lease.lease_id != lease_id:
                return False
            now = time.time()
            return (lease.state is LeaseState.ACTIVE
                    and now > lease.renewable_after
                    and now < lease.expire_time)

    def stats(self) -> LeaseStats:
        with self._stats_lock:
            return dataclasses.replace(self._stats)

    def register_expiry_callback(self, handle: ChunkHandle, callback: ExpiryCallback) -> None:
        with self._lock:
            self._expiry_callbacks.setdefault(handle, []).append(callback)

    def register_handoff_callback(self, handle: ChunkHandle, callback: HandoffCallback) -> None:
        with self._lock:
            self._handoff_callbacks.setdefault(handle, []).append(callback)

    def process_lease_states(self) -> None:
        """Expire overdue leases, flag leases entering renewal, drop stale ones."""
        with self._lock:
            now = time.time()
            expired: List[LeaseInfo] = []
            for handle, lease in list(self._leases.items()):
                if lease.state is LeaseState.ACTIVE:
                    if now > lease.expire_time:
                        lease.state = LeaseState.EXPIRED
                        expired.append(lease)
                    elif now > lease.renewable_after:
                        lease.state = LeaseState.EXPIRING
                        log.info("Lease %s for chunk %s entering renewal window",
                                 lease.lease_id, handle)
                elif lease.state in (LeaseState.EXPIRED, LeaseState.REVOKED):
                    if now > lease.expire_time + self.handoff_grace_period:
                        del self._leases[handle]
                        self._expiry_callbacks.pop(handle, None)
                        self._handoff_callbacks.pop(handle, None)

            if expired:
                self._count(expired_leases=len(expired), active_leases=-len(expired))
                for lease in expired:
                    log.info("Lease %s for chunk %s expired (primary: %s)",
                             lease.lease_id, lease.chunk_handle, lease.primary)
                    for callback in self._expiry_callbacks.get(lease.chunk_handle, []):
                        _fire(callback, lease)