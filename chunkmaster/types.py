"""Core metadata types: inodes, the namespace tree, chunk handles and configuration."""

from __future__ import annotations

import enum
import stat
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from sortedcontainers import SortedDict

MODE_SHIFT = 32
UID_SHIFT = 16
GID_SHIFT = 0

MODE_MASK = 0xFFFFFFFF << MODE_SHIFT
UID_MASK = 0xFFFF << UID_SHIFT
GID_MASK = 0xFFFF << GID_SHIFT


class DFSError(Exception):
    """Base error raised by the master service."""


class NotFoundError(DFSError):
    """An inode, entry, chunk or attribute does not exist."""


class AlreadyExistsError(DFSError):
    """An entry or attribute already exists."""


class ServiceState(enum.Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class ChunkHandle:
    """Globally unique identifier of a chunk."""

    value: uuid.UUID

    @classmethod
    def new(cls) -> "ChunkHandle":
        return cls(uuid.uuid4())

    @classmethod
    def parse(cls, text: str) -> "ChunkHandle":
        """Parse a handle from its string form; raise ValueError if malformed."""
        if not isinstance(text, str):
            raise ValueError(f"invalid chunk handle: {text!r}")
        return cls(uuid.UUID(text))

    def __str__(self) -> str:
        return str(self.value)


@dataclass
class MasterConfig:
    """Settings of the master service; durations are in seconds."""

    root_inode: int = 1
    replication_factor: int = 3
    lease_timeout: float = 60.0
    heartbeat_timeout: float = 30.0
    gc_interval: float = 60.0
    orphaned_chunk_grace_period: float = 3600.0
    startup_timeout: float = 30.0
    shutdown_timeout: float = 30.0
    max_inodes: int = 0
    debug: bool = False

    def validate(self) -> None:
        """Raise ValueError if a setting is out of range."""
        if self.root_inode < 1:
            raise ValueError("root_inode must be positive")
        if self.replication_factor < 1:
            raise ValueError("replication_factor must be at least 1")
        for name in ("lease_timeout", "heartbeat_timeout", "gc_interval",
                     "startup_timeout", "shutdown_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.orphaned_chunk_grace_period < 0:
            raise ValueError("orphaned_chunk_grace_period cannot be negative")
        if self.max_inodes < 0:
            raise ValueError("max_inodes cannot be negative")


@dataclass
class FileAttributes:
    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    atime: int = 0
    mtime: int = 0
    ctime: int = 0
    nlink: int = 0
    blocks: int = 0


@dataclass
class ChunkMetadata:
    version: int = 1
    size: int = 0
    locations: List[str] = field(default_factory=list)


@dataclass
class Inode:
    """An inode; mode, uid and gid are packed together into ``attr``."""

    ino: int
    attr: int = 0
    size: int = 0
    mtime: int = 0
    chunks: Dict[int, ChunkHandle] = field(default_factory=dict)
    xattr: Dict[str, bytes] = field(default_factory=dict)
    nlink: int = 0

    @property
    def mode(self) -> int:
        return (self.attr & MODE_MASK) >> MODE_SHIFT

    @property
    def uid(self) -> int:
        return (self.attr & UID_MASK) >> UID_SHIFT

    @property
    def gid(self) -> int:
        return (self.attr & GID_MASK) >> GID_SHIFT

    def make_attr(self, mode: int, uid: int, gid: int) -> None:
        """Pack mode (32 bits), uid and gid (16 bits each) into ``attr``."""
        self.attr = (
            ((mode & 0xFFFFFFFF) << MODE_SHIFT)
            | ((uid & 0xFFFF) << UID_SHIFT)
            | ((gid & 0xFFFF) << GID_SHIFT)
        )

    def is_dir(self) -> bool:
        return (self.mode & stat.S_IFDIR) != 0


@dataclass(frozen=True, order=True)
class EntryKey:
    parent_ino: int
    name: str


@dataclass
class Entry:
    """A directory entry: a name under a parent inode, pointing at an inode."""

    key: EntryKey
    inode: Optional[Inode]

    def is_dir(self) -> bool:
        return self.inode is not None and self.inode.is_dir()


class MetadataTree:
    """Namespace entries ordered by parent inode, then by name."""

    def __init__(self) -> None:
        self._entries: SortedDict = SortedDict()

    @staticmethod
    def _key(parent_ino: int, name: str) -> Tuple[int, str]:
        return (parent_ino, name)

    def get(self, parent_ino: int, name: str) -> Optional[Entry]:
        return self._entries.get(self._key(parent_ino, name))

    def insert(self, entry: Entry) -> Optional[Entry]:
        """Insert or replace an entry; return the entry it replaced, if any."""
        key = self._key(entry.key.parent_ino, entry.key.name)
        previous = self._entries.get(key)
        self._entries[key] = entry
        return previous

    def delete(self, parent_ino: int, name: str) -> Optional[Entry]:
        """Remove an entry and return it, or None if it was absent."""
        return self._entries.pop(self._key(parent_ino, name), None)

    def find_by_ino(self, ino: int) -> Optional[Entry]:
        """Return the first entry, in tree order, whose inode has this number."""
        return next(
            (e for e in self._entries.values() if e.inode is not None and e.inode.ino == ino),
            None,
        )

    def children(self, parent_ino: int) -> List[Entry]:
        keys = self._entries.irange(
            minimum=(parent_ino, ""), maximum=(parent_ino + 1, ""), inclusive=(True, False)
        )
        return [self._entries[k] for k in keys]

    def __iter__(self) -> Iterator[Entry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Master:
    """The master's in-memory metadata."""

    metadata: MetadataTree = field(default_factory=MetadataTree)
    chunk_metadata: Dict[ChunkHandle, ChunkMetadata] = field(default_factory=dict)
    next_ino: int = 2
    root: int = 1

    def next_inode(self) -> int:
        ino = self.next_ino
        self.next_ino += 1
        return ino


class ServerVersionMap:
    """Thread-safe map of chunk versions held by one server."""

    def __init__(self) -> None:
        self.versions: Dict[ChunkHandle, int] = {}
        self._lock = threading.Lock()

    def get_version(self, handle: ChunkHandle) -> Optional[int]:
        with self._lock:
            return self.versions.get(handle)

    def set_version(self, handle: ChunkHandle, version: int) -> None:
        with self._lock:
            self.versions[handle] = version

    def remove_chunk(self, handle: ChunkHandle) -> None:
        with self._lock:
            self.versions.pop(handle, None)