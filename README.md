# chunkmaster

`chunkmaster` holds the in-memory metadata pieces that the master of a chunk-based
distributed file system needs:

- a namespace of files, directories and symbolic links
- inodes with packed mode, uid and gid, plus extended attributes
- primary leases on chunks
- heartbeat tracking of chunk servers
- lazy garbage collection of deleted inodes and unreferenced chunks

The package is a library. You build your own host object from its parts.

## Installation

```
pip install chunkmaster
```

To run the tests:

```
pip install "chunkmaster[test]"
pytest
```

## Modules

### `chunkmaster.types`

Core data and errors:

- `ChunkHandle`: a UUID-based identifier. Create one with `ChunkHandle.new()` and read one with `ChunkHandle.parse(text)`. `parse` raises `ValueError` on malformed input.
- `MasterConfig`: settings, with durations in seconds. Check them with `validate()`.
- `FileAttributes`, `ChunkMetadata`.
- `Inode`: mode, uid and gid are packed into `attr` by `make_attr()`. Read them back through the `mode`, `uid` and `gid` properties. `is_dir()` reports whether the inode is a directory.
- `EntryKey`, `Entry`.
- `MetadataTree`: entries ordered by `(parent_ino, name)`. It has `get`, `insert`, `delete`, `find_by_ino` and `children`, and supports iteration and `len`.
- `Master`: holds the tree, the chunk table and the inode counter (`next_inode()`).
- `ServerVersionMap`: a thread-safe map from chunk handle to version.
- `ServiceState`.
- Errors: `DFSError`, `NotFoundError`, `AlreadyExistsError`.

### `chunkmaster.entries`

`EntryOpsMixin` provides these operations on a host object:

- `create_entry`: create an entry of any `EntryType`: `FILE`, `DIRECTORY` or `SYMLINK`. A symbolic link stores its target in the `symlink_target` extended attribute.
- `delete_entry`: delete an entry. A non-empty directory needs `recursive=True`. The call returns the deleted inode number and the freed chunk handles.
- `move_entry`: move or rename an entry. An entry already at the destination is replaced.

### `chunkmaster.inodes`

`InodeOpsMixin` provides `find_inode`, `get_attributes`, `statx`, `set_attributes` and `lookup`.

`set_attributes` uses the mask bits `ATTR_MODE`, `ATTR_UID`, `ATTR_GID`, `ATTR_SIZE`, `ATTR_ATIME` and `ATTR_MTIME`. Any change to attributes also sets `mtime` to the current time.

### `chunkmaster.xattrs`

`XAttrOpsMixin` provides `get_xattr`, `set_xattr`, `list_xattr` and `remove_xattr`.

`set_xattr` takes the flags `XATTR_CREATE` and `XATTR_REPLACE`:

- With `XATTR_CREATE`, it fails if the attribute already exists.
- With `XATTR_REPLACE`, it fails if the attribute does not exist.

### `chunkmaster.leases`

`LeaseManager` gives out one primary lease per chunk. It supports these operations:

- grant: `grant_lease`
- renew: `renew_lease`, allowed only in the last third of the lease's lifetime
- hand off: `request_handoff`
- revoke: `revoke_lease` and `revoke_all_for_server`

Further methods:

- `process_lease_states` expires leases and drops stale ones. It also runs in the background once `start()` has been called.
- Callbacks for expiry and handoff run on their own threads.
- Refused operations raise `LeaseError`.

### `chunkmaster.heartbeats`

`HeartbeatManager` does the following:

- records heartbeats with `record_heartbeat`
- reports chunks that the master does not know with `process_chunk_list`, and hands those chunks to the GC manager
- declares silent servers failed with `check_missed_heartbeats`, which also runs in the background after `start()`

For a failed server, the manager:

1. removes it from the host's `registered_servers`
2. removes it from every chunk's locations
3. revokes its leases through the host's `revoke_chunk_leases_for_server(address, reason)`

### `chunkmaster.gc`

`GCManager` records deleted inodes and unreferenced chunks.

- `collect()` runs one cycle. It also runs every `gc_interval` seconds after `start()`.
- Once a chunk is older than the grace period, it is scheduled for deletion.
- Deletion happens a minute later, through the host's `chunk_deleter(server_address, [handle])`.
- A deletion succeeds if a majority of replicas succeed.

## Host object

The mixins and managers work on a host object that provides these attributes:

| Attribute | Used by | Contents |
| --- | --- | --- |
| `metadata_lock` | all | A reentrant lock, such as `threading.RLock()`. |
| `master` | all | A `chunkmaster.types.Master`. |
| `journal` | mixins, GC | `None`, or an object with the journal methods listed below. |
| `gc_manager` | entries, heartbeats | `None` or a `GCManager`. |
| `config` | GC | A `MasterConfig`. |
| `chunk_deleter` | GC | `None` or a callable. |
| `chunk_server_lock` | heartbeats | A lock. |
| `registered_servers` | heartbeats | A dict from server id to an object with an `address`. |
| `revoke_chunk_leases_for_server` | heartbeats | A method taking an address and a reason. |

The journal methods are:

- `log_create_inode`
- `log_delete_inode`
- `log_rename`
- `log_update_inode`
- `log_delete_chunk`
- `log_setxattr`
- `log_removexattr`

## Example

```python
import stat
import threading

from chunkmaster.entries import EntryOpsMixin, EntryType
from chunkmaster.inodes import InodeOpsMixin
from chunkmaster.xattrs import XAttrOpsMixin
from chunkmaster.types import Entry, EntryKey, FileAttributes, Inode, Master


class Namespace(EntryOpsMixin, InodeOpsMixin, XAttrOpsMixin):
    def __init__(self):
        self.metadata_lock = threading.RLock()
        self.master = Master(next_ino=2, root=1)
        self.journal = None
        self.gc_manager = None
        root = Inode(ino=1, size=4096, nlink=2)
        root.make_attr(stat.S_IFDIR | 0o755, 0, 0)
        self.master.metadata.insert(Entry(EntryKey(1, "."), root))


ns = Namespace()
inode = ns.create_entry(1, "notes.txt", EntryType.FILE, FileAttributes(mode=0o644), "")
ns.set_xattr(inode.ino, "user.tag", b"draft")
print(ns.lookup(1, "notes.txt").ino == inode.ino)   # True
print(ns.delete_entry(1, "notes.txt"))              # (2, [])
```

A lease manager on its own:

```python
from chunkmaster.leases import LeaseManager, LeaseRequest
from chunkmaster.types import ChunkHandle

leases = LeaseManager(timeout=60.0)
leases.start()
lease = leases.grant_lease(LeaseRequest(ChunkHandle.new(), "node-a:8081", ["node-b:8081"], 1))
print(lease.primary, lease.state)
leases.stop()
```

## What this package does not do

- There is no ready-made master service object. You assemble the host yourself, as in the example above.
- It does not allocate chunks or choose chunk placement.
- It does not register chunk servers or answer their heartbeat requests. `HeartbeatManager` only tracks heartbeats that you record.
- There is no network server, no RPC transport and no command-line program.
- Nothing is stored on disk. Persistence is whatever journal object you pass in. Chunk data is removed only through the `chunk_deleter` you supply.