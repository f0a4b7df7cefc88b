"""In-memory metadata, lease, heartbeat and garbage-collection parts for a chunk-based file system."""

__version__ = "0.1.0"
__all__ = [
    "entries",
    "gc",
    "heartbeats",
    "inodes",
    "leases",
    "types",
    "xattrs",
]