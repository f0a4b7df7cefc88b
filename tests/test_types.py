import stat

import pytest

from chunkmaster.types import (
    ChunkHandle,
    Entry,
    EntryKey,
    Inode,
    Master,
    MasterConfig,
    MetadataTree,
    ServerVersionMap,
)


def _entry(parent, name, ino, mode=stat.S_IFREG | 0o644):
    inode = Inode(ino=ino)
    inode.make_attr(mode, 0, 0)
    return Entry(EntryKey(parent, name), inode)


def test_chunk_handle_round_trip():
    handle = ChunkHandle.new()
    assert ChunkHandle.parse(str(handle)) == handle


def test_chunk_handles_are_unique():
    assert len({ChunkHandle.new() for _ in range(50)}) == 50


@pytest.mark.parametrize("text", ["", "not-a-handle", "1234"])
def test_chunk_handle_parse_rejects_garbage(text):
    with pytest.raises(ValueError):
        ChunkHandle.parse(text)


def test_make_attr_round_trip():
    inode = Inode(ino=7)
    inode.make_attr(stat.S_IFREG | 0o640, 1000, 100)
    assert (inode.mode, inode.uid, inode.gid) == (stat.S_IFREG | 0o640, 1000, 100)


def test_make_attr_truncates_uid_to_16_bits():
    inode = Inode(ino=7)
    inode.make_attr(0, 0x10005, 0)
    assert inode.uid == 5
    assert inode.mode == 0


def test_mode_occupies_high_bits():
    inode = Inode(ino=1)
    inode.make_attr(stat.S_IFDIR | 0o755, 3, 4)
    assert inode.attr >> 32 == stat.S_IFDIR | 0o755


def test_is_dir():
    d = _entry(1, "d", 2, stat.S_IFDIR | 0o755)
    f = _entry(1, "f", 3)
    assert d.is_dir() and d.inode.is_dir()
    assert not f.is_dir()
    assert not Entry(EntryKey(1, "x"), None).is_dir()


def test_tree_insert_get_delete():
    tree = MetadataTree()
    e = _entry(1, "a", 2)
    assert tree.insert(e) is None
    assert tree.get(1, "a") is e
    assert len(tree) == 1
    assert tree.delete(1, "a") is e
    assert tree.get(1, "a") is None
    assert tree.delete(1, "a") is None
    assert len(tree) == 0


def test_tree_insert_replaces():
    tree = MetadataTree()
    first = _entry(1, "a", 2)
    second = _entry(1, "a", 3)
    tree.insert(first)
    assert tree.insert(second) is first
    assert tree.get(1, "a") is second
    assert len(tree) == 1


def test_tree_orders_by_parent_then_name():
    tree = MetadataTree()
    for parent, name, ino in [(2, "a", 10), (1, "b", 11), (1, "a", 12), (3, "", 13)]:
        tree.insert(_entry(parent, name, ino))
    keys = [(e.key.parent_ino, e.key.name) for e in tree]
    assert keys == sorted(keys)


def test_tree_children_only_for_parent():
    tree = MetadataTree()
    tree.insert(_entry(1, "x", 2))
    tree.insert(_entry(2, "y", 3))
    tree.insert(_entry(2, "z", 4))
    tree.insert(_entry(3, "w", 5))
    names = [e.key.name for e in tree.children(2)]
    assert names == ["y", "z"]
    assert tree.children(9) == []


def test_tree_find_by_ino():
    tree = MetadataTree()
    tree.insert(_entry(1, "x", 42))
    found = tree.find_by_ino(42)
    assert found is not None and found.key.name == "x"
    assert tree.find_by_ino(43) is None


def test_master_next_inode_increments():
    master = Master(next_ino=5)
    first = master.next_inode()
    second = master.next_inode()
    assert first == 5
    assert second == first + 1
    assert master.next_ino == first + 2


def test_config_validate_accepts_defaults():
    config = MasterConfig()
    config.validate()
    assert config.replication_factor >= 1


@pytest.mark.parametrize(
    "kwargs",
    [{"replication_factor": 0}, {"lease_timeout": 0}, {"heartbeat_timeout": -1},
     {"root_inode": 0}, {"orphaned_chunk_grace_period": -5}],
)
def test_config_validate_rejects(kwargs):
    with pytest.raises(ValueError):
        MasterConfig(**kwargs).validate()


def test_server_version_map():
    versions = ServerVersionMap()
    handle = ChunkHandle.new()
    assert versions.get_version(handle) is None
    versions.set_version(handle, 3)
    assert versions.get_version(handle) == 3
    versions.remove_chunk(handle)
    assert versions.get_version(handle) is None