"""Extended attribute operations for the master service."""

from __future__ import annotations

import time
from typing import List

from chunkmaster.types import AlreadyExistsError, DFSError, Inode, NotFoundError

XATTR_CREATE = 1
XATTR_REPLACE = 2


class XAttrOpsMixin:
    """Extended attributes; the host provides ``metadata_lock``, ``master`` and ``journal``."""

    def _xattr_inode(self, ino: int) -> Inode:
        entry = self.master.metadata.find_by_ino(ino)
        if entry is None:
            raise NotFoundError(f"inode not found: {ino}")
        return entry.inode

    def get_xattr(self, ino: int, name: str) -> bytes:
        with self.metadata_lock:
            inode = self._xattr_inode(ino)
            try:
                return inode.xattr[name]
            except KeyError:
                raise NotFoundError(f"attribute not found: {name}") from None

    def set_xattr(self, ino: int, name: str, value: bytes, flags: int = 0) -> None:
        """Set an attribute; XATTR_CREATE and XATTR_REPLACE restrict when it may be set."""
        with self.metadata_lock:
            inode = self._xattr_inode(ino)
            exists = name in inode.xattr
            if flags & XATTR_CREATE and exists:
                raise AlreadyExistsError(f"attribute already exists: {name}")
            if flags & XATTR_REPLACE and not exists:
                raise NotFoundError(f"attribute not found: {name}")

            inode.xattr[name] = bytes(value)
            inode.mtime = int(time.time())

            journal = self.journal
            if journal is not None:
                try:
                    journal.log_setxattr(ino, name, bytes(value), flags)
                except Exception as exc:
                    raise DFSError(f"failed to log setxattr operation: {exc}") from exc

    def list_xattr(self, ino: int) -> List[str]:
        with self.metadata_lock:
            return list(self._xattr_inode(ino).xattr)

    def remove_xattr(self, ino: int, name: str) -> None:
        with self.metadata_lock:
            inode = self._xattr_inode(ino)
            if name not in inode.xattr:
                raise NotFoundError(f"attribute not found: {name}")
            del inode.xattr[name]
            inode.mtime = int(time.time())

            journal = self.journal
            if journal is not None:
                try:
                    journal.log_removexattr(ino, name)
                except Exception as exc:
                    raise DFSError(f"failed to log removexattr operation: {exc}") from exc