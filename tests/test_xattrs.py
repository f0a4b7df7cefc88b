import stat
import threading

import pytest

from chunkmaster.types import (
    AlreadyExistsError,
    DFSError,
    Entry,
    EntryKey,
    Inode,
    Master,
    NotFoundError,
)
from chunkmaster.xattrs import XATTR_CREATE, XATTR_REPLACE, XAttrOpsMixin

ROOT = 1
FILE_INO = 7


class RecordingJournal:
    def __init__(self):
        self.calls = []

    def log_setxattr(self, *args):
        self.calls.append(("set",) + args)

    def log_removexattr(self, *args):
        self.calls.append(("remove",) + args)


class FailingJournal:
    def log_setxattr(self, *args):
        raise RuntimeError("disk full")

    def log_removexattr(self, *args):
        raise RuntimeError("disk full")


class Host(XAttrOpsMixin):
    def __init__(self, file_inode, journal=None):
        self.metadata_lock = threading.RLock()
        self.master = Master(next_ino=file_inode.ino + 1, root=ROOT)
        root = Inode(ino=ROOT)
        root.make_attr(stat.S_IFDIR | 0o755, 0, 0)
        self.master.metadata.insert(Entry(EntryKey(ROOT, "."), root))
        self.file = file_inode
        self.file.make_attr(stat.S_IFREG | 0o644, 0, 0)
        self.master.metadata.insert(Entry(EntryKey(ROOT, "f"), self.file))
        self.journal = journal


def test_set_then_get_round_trip():
    host = Host(Inode(ino=FILE_INO, mtime=0))
    host.set_xattr(FILE_INO, "user.tag", b"blue", 0)
    assert host.get_xattr(FILE_INO, "user.tag") == b"blue"
    assert host.file.mtime > 0


def test_list_returns_all_names():
    host = Host(Inode(ino=FILE_INO))
    host.set_xattr(FILE_INO, "user.a", b"1", 0)
    host.set_xattr(FILE_INO, "user.b", b"2", 0)
    assert sorted(host.list_xattr(FILE_INO)) == ["user.a", "user.b"]


def test_list_empty():
    host = Host(Inode(ino=FILE_INO))
    assert host.list_xattr(ROOT) == []


def test_remove_attribute():
    host = Host(Inode(ino=FILE_INO))
    host.set_xattr(FILE_INO, "user.a", b"1", 0)
    host.remove_xattr(FILE_INO, "user.a")
    with pytest.raises(NotFoundError):
        host.get_xattr(FILE_INO, "user.a")
    assert host.list_xattr(FILE_INO) == []


def test_remove_missing_raises():
    host = Host(Inode(ino=FILE_INO))
    with pytest.raises(NotFoundError):
        host.remove_xattr(FILE_INO, "user.none")


def test_get_missing_raises():
    host = Host(Inode(ino=FILE_INO))
    with pytest.raises(NotFoundError):
        host.get_xattr(FILE_INO, "user.none")


def test_unknown_inode_raises():
    host = Host(Inode(ino=FILE_INO))
    with pytest.raises(NotFoundError):
        host.set_xattr(999, "user.a", b"1", 0)


def test_create_flag_refuses_existing():
    host = Host(Inode(ino=FILE_INO))
    host.set_xattr(FILE_INO, "user.a", b"1", XATTR_CREATE)
    with pytest.raises(AlreadyExistsError):
        host.set_xattr(FILE_INO, "user.a", b"2", XATTR_CREATE)
    assert host.get_xattr(FILE_INO, "user.a") == b"1"


def test_replace_flag_requires_existing():
    host = Host(Inode(ino=FILE_INO))
    with pytest.raises(NotFoundError):
        host.set_xattr(FILE_INO, "user.a", b"1", XATTR_REPLACE)
    host.set_xattr(FILE_INO, "user.a", b"1", 0)
    host.set_xattr(FILE_INO, "user.a", b"2", XATTR_REPLACE)
    assert host.get_xattr(FILE_INO, "user.a") == b"2"


def test_operations_are_journaled():
    journal = RecordingJournal()
    host = Host(Inode(ino=FILE_INO), journal=journal)
    host.set_xattr(FILE_INO, "user.a", b"v", XATTR_CREATE)
    host.remove_xattr(FILE_INO, "user.a")
    assert journal.calls == [
        ("set", FILE_INO, "user.a", b"v", XATTR_CREATE),
        ("remove", FILE_INO, "user.a"),
    ]


def test_journal_failure_raises():
    host = Host(Inode(ino=FILE_INO), journal=FailingJournal())
    with pytest.raises(DFSError):
        host.set_xattr(FILE_INO, "user.a", b"v", 0)
    host.file.xattr["user.b"] = b"x"
    with pytest.raises(DFSError):
        host.remove_xattr(FILE_INO, "user.b")