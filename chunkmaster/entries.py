"""Creation, deletion and renaming of namespace entries for the master service."""

from __future__ import annotations

import enum
import logging
import stat
import time
from typing import Dict, List, Optional, Tuple

from chunkmaster.types import (
    AlreadyExistsError,
    ChunkHandle,
    DFSError,
    Entry,
    EntryKey,
    FileAttributes,
    Inode,
    NotFoundError,
)

log = logging.getLogger(__name__)

MAX_MOVE_RETRIES = 3
RETRY_DELAY = 0.005
SYMLINK_TARGET_XATTR = "symlink_target"


class EntryType(enum.IntEnum):
    FILE = 0
    DIRECTORY = 1
    SYMLINK = 2


_TYPE_BITS = {
    EntryType.FILE: 0x8000,
    EntryType.DIRECTORY: 0x4000,
    EntryType.SYMLINK: 0xA000,
}


class EntryOpsMixin:
    """Namespace operations.

    The host provides ``metadata_lock`` (reentrant), ``master``, ``journal``
    (or None) and ``gc_manager`` (or None).
    """

    def create_entry(self, parent_ino: int, name: str, entry_type: int,
                     attrs: FileAttributes, symlink_target: str = "") -> Inode:
        """Create a file, directory or symbolic link under ``parent_ino``."""
        with self.metadata_lock:
            self._require_directory(parent_ino, "parent directory")
            if self.master.metadata.get(parent_ino, name) is not None:
                raise AlreadyExistsError(f"entry already exists: {name}")

            inode = self._new_inode(int(entry_type), attrs, symlink_target)
            self.master.metadata.insert(Entry(EntryKey(parent_ino, name), inode))

            journal = self.journal
            if journal is not None:
                try:
                    journal.log_create_inode(inode.ino, parent_ino, name, attrs,
                                             int(entry_type) == EntryType.DIRECTORY,
                                             symlink_target)
                except Exception as exc:
                    log.error("Failed to log create entry operation: %s", exc)
                    raise DFSError(f"failed to log create entry operation: {exc}") from exc
            return inode

    def delete_entry(self, parent_ino: int, name: str,
                     recursive: bool = False) -> Tuple[int, List[str]]:
        """Remove an entry (and, if asked, a directory's contents).

        Return the deleted inode number and the handles of the freed chunks.
        """
        with self.metadata_lock:
            entry = self.master.metadata.get(parent_ino, name)
            if entry is None:
                raise NotFoundError(f"entry not found: {name}")
            inode = entry.inode
            deleted_ino = inode.ino
            is_directory = inode.is_dir()

            freed = [str(handle) for handle in inode.chunks.values()]
            if is_directory:
                children = self._children_of(deleted_ino)
                if children and not recursive:
                    raise DFSError("directory not empty and recursive flag not set")
                for child in children:
                    freed.extend(self._delete_recursive(child))
                    self._drop_entry(child)

            if self.master.metadata.get(parent_ino, name) is None:
                raise NotFoundError(f"entry was already deleted: {name}")

            self.master.metadata.delete(parent_ino, name)
            self._process_chunk_deletions(inode, deleted_ino)
            if self.gc_manager is not None:
                self.gc_manager.mark_inode_for_deletion(deleted_ino, inode)
            self._journal_deletion(deleted_ino, parent_ino, name)
            return deleted_ino, freed

    def move_entry(self, old_parent_ino: int, old_name: str,
                   new_parent_ino: int, new_name: str) -> Inode:
        """Move or rename an entry, replacing whatever is at the destination."""
        with self.metadata_lock:
            old = self._find_with_retry(old_parent_ino, old_name)
            self._require_directory(new_parent_ino, "new parent directory")

            new = Entry(EntryKey(new_parent_ino, new_name), old.inode)
            replaced: Optional[Inode] = None
            if new.key != old.key:
                existing = self.master.metadata.delete(new_parent_ino, new_name)
                if existing is not None:
                    replaced = existing.inode
                    log.info("MoveEntry: replacing existing file %s (inode %d) with %s "
                             "(inode %d)", new_name, replaced.ino, old_name, old.inode.ino)
            self.master.metadata.delete(old_parent_ino, old_name)
            self.master.metadata.insert(new)

            if replaced is not None:
                self._cleanup_replaced(replaced)

            journal = self.journal
            if journal is not None:
                try:
                    journal.log_rename(old_parent_ino, new_parent_ino, old.inode.ino,
                                       old_name, new_name)
                except Exception as exc:
                    log.error("Failed to log move entry operation: %s", exc)
                    raise DFSError(f"failed to log move entry operation: {exc}") from exc
            return new.inode

    def _require_directory(self, ino: int, what: str) -> None:
        entry = self.master.metadata.find_by_ino(ino)
        if entry is None or not entry.inode.is_dir():
            raise NotFoundError(f"{what} not found or is not a directory: {ino}")

    def _new_inode(self, entry_type: int, attrs: FileAttributes,
                   symlink_target: str) -> Inode:
        mode = attrs.mode | _TYPE_BITS.get(entry_type, 0)
        inode = Inode(
            ino=self.master.next_inode(),
            size=attrs.size,
            mtime=int(time.time()),
            nlink=1,
        )
        inode.make_attr(mode, attrs.uid, attrs.gid)
        if entry_type == EntryType.SYMLINK and symlink_target:
            inode.xattr[SYMLINK_TARGET_XATTR] = symlink_target.encode()
        return inode

    def _children_of(self, ino: int) -> List[Entry]:
        # The root's "." entry lives under the root itself; never treat it as a child.
        return [child for child in self.master.metadata.children(ino)
                if child.inode is None or child.inode.ino != ino]

    def _drop_entry(self, entry: Entry) -> None:
        self.master.metadata.delete(entry.key.parent_ino, entry.key.name)
        if self.gc_manager is not None and entry.inode is not None:
            self.gc_manager.mark_inode_for_deletion(entry.inode.ino, entry.inode)

    def _delete_recursive(self, entry: Entry) -> List[str]:
        inode = entry.inode
        if inode is None:
            return []
        freed: List[str] = []
        if inode.is_dir():
            for child in self._children_of(inode.ino):
                freed.extend(self._delete_recursive(child))
                self._drop_entry(child)
        freed.extend(str(handle) for handle in inode.chunks.values())
        self._process_chunk_deletions(inode, inode.ino)
        return freed

    def _process_chunk_deletions(self, inode: Inode, ino: int) -> None:
        journal = self.journal
        if journal is not None:
            for index, handle in inode.chunks.items():
                try:
                    journal.log_delete_chunk(str(handle), ino, index)
                except Exception as exc:
                    log.error("Failed to log chunk deletion for %s: %s", handle, exc)
        self._remove_chunk_metadata(inode.chunks)

    def _remove_chunk_metadata(self, chunks: Dict[int, ChunkHandle]) -> None:
        for index, handle in chunks.items():
            meta = self.master.chunk_metadata.get(handle)
            if meta is None:
                log.info("Chunk metadata not found for chunk %s (index: %d)", handle, index)
                continue
            if self.gc_manager is not None:
                if self.gc_manager.delete_chunk_from_servers(handle, list(meta.locations)):
                    log.info("Deleted chunk %s from servers", handle)
                else:
                    log.warning("Failed to delete chunk %s from some servers", handle)
            del self.master.chunk_metadata[handle]
            log.info("Removed chunk metadata for chunk %s (index: %d)", handle, index)

    def _journal_deletion(self, ino: int, parent_ino: int, name: str) -> None:
        journal = self.journal
        if journal is None:
            return
        try:
            journal.log_delete_inode(ino, parent_ino, name)
        except Exception as exc:
            log.error("Failed to log delete entry operation for %s: %s", name, exc)

    def _find_with_retry(self, parent_ino: int, name: str) -> Entry:
        for attempt in range(MAX_MOVE_RETRIES):
            entry = self.master.metadata.get(parent_ino, name)
            if entry is not None:
                return entry
            if attempt < MAX_MOVE_RETRIES - 1:
                time.sleep(RETRY_DELAY)
        raise NotFoundError(f"source entry not found: {name}")

    def _cleanup_replaced(self, inode: Inode) -> None:
        log.info("Cleaning up replaced inode %d", inode.ino)
        if inode.mode & stat.S_IFREG:
            self._process_chunk_deletions(inode, inode.ino)
        if inode.is_dir():
            log.warning("Attempted to replace directory inode %d", inode.ino)