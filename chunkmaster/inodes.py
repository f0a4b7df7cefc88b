"""Inode attribute operations and name lookup for the master service."""

from __future__ import annotations

import logging
import time
from typing import List, Tuple

from chunkmaster.types import DFSError, Entry, FileAttributes, Inode, NotFoundError

log = logging.getLogger(__name__)

ATTR_MODE = 1 << 0
ATTR_UID = 1 << 1
ATTR_GID = 1 << 2
ATTR_SIZE = 1 << 3
ATTR_ATIME = 1 << 4
ATTR_MTIME = 1 << 5

_FIELD_NAMES = (
    (ATTR_MODE, "mode"),
    (ATTR_UID, "uid"),
    (ATTR_GID, "gid"),
    (ATTR_SIZE, "size"),
    (ATTR_ATIME, "atime"),
    (ATTR_MTIME, "mtime"),
)

_BLOCK_SIZE = 4096


class InodeOpsMixin:
    """Inode operations; the host provides ``metadata_lock``, ``master`` and ``journal``."""

    def _find_inode(self, ino: int) -> Entry:
        entry = self.master.metadata.find_by_ino(ino)
        if entry is None:
            raise NotFoundError(f"inode not found: {ino}")
        return entry

    def find_inode(self, ino: int) -> Entry:
        """Return the first entry pointing at inode ``ino``."""
        with self.metadata_lock:
            return self._find_inode(ino)

    def get_attributes(self, ino: int, attribute_mask: int) -> Inode:
        with self.metadata_lock:
            return self._find_inode(ino).inode

    def statx(self, ino: int, mask: int, flags: int) -> Tuple[Inode, int]:
        """Return the inode and the mask of fields supplied, which is all requested."""
        with self.metadata_lock:
            return self._find_inode(ino).inode, mask

    def set_attributes(self, ino: int, attrs: FileAttributes,
                       attribute_mask: int) -> FileAttributes:
        """Update the fields selected by ``attribute_mask`` and return the result."""
        with self.metadata_lock:
            inode = self._find_inode(ino).inode
            now = int(time.time())

            if attribute_mask & ATTR_MODE:
                inode.make_attr(attrs.mode, inode.uid, inode.gid)
            if attribute_mask & ATTR_UID:
                inode.make_attr(inode.mode, attrs.uid, inode.gid)
            if attribute_mask & ATTR_GID:
                inode.make_attr(inode.mode, inode.uid, attrs.gid)
            if attribute_mask & ATTR_SIZE:
                inode.size = attrs.size
            if attribute_mask & ATTR_MTIME:
                inode.mtime = attrs.mtime
            # Any attribute change counts as a modification.
            inode.mtime = now

            updated = FileAttributes(
                mode=inode.mode,
                uid=inode.uid,
                gid=inode.gid,
                size=inode.size,
                atime=now,
                mtime=inode.mtime,
                ctime=now,
                nlink=inode.nlink,
                blocks=(inode.size + _BLOCK_SIZE - 1) // _BLOCK_SIZE,
            )

            journal = self.journal
            if journal is not None:
                fields: List[str] = [name for bit, name in _FIELD_NAMES if attribute_mask & bit]
                try:
                    journal.log_update_inode(ino, updated, fields)
                except Exception as exc:  # journal failures do not undo the update
                    log.error("Failed to log inode update for ino=%d: %s", ino, exc)

            return FileAttributes(**vars(updated))

    def lookup(self, parent_ino: int, name: str) -> Inode:
        """Return the inode named ``name`` in directory ``parent_ino``."""
        with self.metadata_lock:
            entry = self.master.metadata.get(parent_ino, name)
            if entry is None:
                raise NotFoundError(f"entry not found: {name}")
            if entry.inode is None:
                raise DFSError("invalid entry: missing inode data")
            return entry.inode