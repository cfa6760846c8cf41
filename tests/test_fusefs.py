import errno

import pytest

from mvpages.fusefs import (
    DB_INODE_BASE,
    F_RDLCK,
    F_UNLCK,
    F_WRLCK,
    FAKE_INODE_BASE,
    SYMLINK_INODE_BASE,
    TEMP_INODE_BASE,
    DbName,
    FileType,
    FuseFs,
    fixup_read_shift,
    lock_type_to_lockkind,
    parse_db_name,
    parse_namespaces,
)
from mvpages.types import LockKind

SECTOR = 4096


class FakeConnection:
    def __init__(self, lock_result=True):
        self.lock_state = LockKind.NONE
        self.calls = []
        self.lock_result = lock_result
        self.written = {}

    def current_lock(self):
        return self.lock_state

    async def lock(self, kind):
        self.calls.append(("lock", kind))
        if self.lock_result:
            self.lock_state = kind
        return self.lock_result

    async def unlock(self, kind):
        self.calls.append(("unlock", kind))
        self.lock_state = kind
        return True

    async def read_exact_at(self, length, offset):
        return bytes([(offset // SECTOR) % 256]) * length

    async def write_all_at(self, data, offset):
        self.written[offset] = data

    async def size(self):
        return 3 * SECTOR


class FakeVfs:
    sector_size = SECTOR

    def __init__(self, lock_result=True, fail=False):
        self.opened = []
        self.conns = []
        self.lock_result = lock_result
        self.fail = fail

    def open(self, db, map_name):
        if self.fail:
            raise ValueError("bad")
        self.opened.append((db, map_name))
        conn = FakeConnection(self.lock_result)
        self.conns.append(conn)
        return conn


def make_fs(**kwargs):
    vfs = FakeVfs(**kwargs)
    return FuseFs({"main.db": "alpha", "other.db": "beta"}, vfs), vfs


def test_parse_db_name():
    assert parse_db_name("ns3-7") == DbName(ns=3, fakeino_delta=7)
    assert parse_db_name("ns3-7x") is None
    assert parse_db_name("foo") is None


def test_parse_namespaces_keeps_order():
    assert list(parse_namespaces("a=x,b=y").items()) == [("a", "x"), ("b", "y")]
    with pytest.raises(ValueError):
        parse_namespaces("a=x,broken")


def test_lock_type_mapping():
    assert lock_type_to_lockkind(F_RDLCK) is LockKind.SHARED
    assert lock_type_to_lockkind(F_WRLCK) is LockKind.EXCLUSIVE
    assert lock_type_to_lockkind(F_UNLCK) is LockKind.NONE
    with pytest.raises(ValueError):
        lock_type_to_lockkind(99)


def test_fixup_read_shift():
    buf = bytes(range(256)) * 16
    assert fixup_read_shift(SECTOR + 4, 10, buf) == buf[4:14]
    with pytest.raises(ValueError):
        fixup_read_shift(SECTOR - 2, 10, buf)
    with pytest.raises(ValueError):
        fixup_read_shift(0, 0, buf)


@pytest.mark.asyncio
async def test_namespace_lookup_gives_symlink():
    fs, _ = make_fs()
    attr = fs.lookup(1, "main.db", 5, 6)
    assert attr.kind is FileType.SYMLINK
    assert attr.ino >= SYMLINK_INODE_BASE
    assert fs.readlink(attr.ino) == b"ns0-0.db\x00"
    second = fs.lookup(1, "other.db")
    assert fs.readlink(second.ino) == b"ns1-1.db\x00"
    got = await fs.getattr(attr.ino)
    assert got.size == len(b"ns0-0.db")


@pytest.mark.asyncio
async def test_db_lookup_and_getattr_without_connection():
    fs, _ = make_fs()
    attr = fs.lookup(1, "ns1-5.db")
    assert DB_INODE_BASE <= attr.ino < TEMP_INODE_BASE
    assert attr.size == SECTOR
    got = await fs.getattr(attr.ino)
    assert got.ino == (FAKE_INODE_BASE + 5) * 2
    assert got.size == SECTOR


def test_lookup_errors():
    fs, _ = make_fs()
    with pytest.raises(OSError) as info:
        fs.lookup(2, "main.db")
    assert info.value.errno == errno.ENOENT
    with pytest.raises(OSError) as info:
        fs.lookup(1, "ns9-0.db")
    assert info.value.errno == errno.ENOENT


@pytest.mark.asyncio
async def test_journal_round_trip_and_forget():
    fs, _ = make_fs()
    attr = fs.lookup(1, "ns0-2.db-journal")
    assert attr.ino >= TEMP_INODE_BASE
    assert await fs.write(attr.ino, 3, b"hello") == 5
    assert await fs.read(attr.ino, 0, 100) == b"\x00\x00\x00hello"
    got = await fs.getattr(attr.ino)
    assert got.size == 8
    assert got.ino == (FAKE_INODE_BASE + 2) * 2 + 1
    fs.forget(attr.ino, 1)
    with pytest.raises(OSError) as info:
        await fs.getattr(attr.ino)
    assert info.value.errno == errno.ENOENT


@pytest.mark.asyncio
async def test_open_read_write_getattr_db():
    fs, vfs = make_fs()
    ino = fs.lookup(1, "ns1-0.db").ino
    fh = fs.open(ino)
    assert fs.open(ino + TEMP_INODE_BASE - DB_INODE_BASE if False else ino - 0) if False else fh >= 1
    assert vfs.opened == [("beta", False)]
    assert await fs.read(ino, SECTOR + 10, 4) == b"\x01" * 4
    assert await fs.write(ino, 0, b"x" * SECTOR) == SECTOR
    assert vfs.conns[0].written == {0: b"x" * SECTOR}
    got = await fs.getattr(ino)
    assert got.size == 3 * SECTOR
    assert got.blocks == 3


def test_open_failure_maps_to_eio():
    fs, _ = make_fs(fail=True)
    ino = fs.lookup(1, "ns0-0.db").ino
    with pytest.raises(OSError) as info:
        fs.open(ino)
    assert info.value.errno == errno.EIO


@pytest.mark.asyncio
async def test_setlk_drives_connection_locks():
    fs, vfs = make_fs()
    ino = fs.lookup(1, "ns0-0.db").ino
    fs.open(ino)
    await fs.setlk(ino, 0, 10, F_RDLCK)
    await fs.setlk(ino, 20, 30, F_WRLCK)
    await fs.setlk(ino, 0, 100, F_UNLCK)
    assert vfs.conns[0].calls == [
        ("lock", LockKind.SHARED),
        ("lock", LockKind.EXCLUSIVE),
        ("unlock", LockKind.NONE),
    ]


@pytest.mark.asyncio
async def test_setlk_refused_lock_is_eacces():
    fs, _ = make_fs(lock_result=False)
    ino = fs.lookup(1, "ns0-0.db").ino
    fs.open(ino)
    with pytest.raises(OSError) as info:
        await fs.setlk(ino, 0, 1, F_RDLCK)
    assert info.value.errno == errno.EACCES


@pytest.mark.asyncio
async def test_setlk_rejects_blocking():
    fs, _ = make_fs()
    ino = fs.lookup(1, "ns0-0.db").ino
    with pytest.raises(ValueError):
        await fs.setlk(ino, 0, 1, F_RDLCK, True)


def test_forget_too_many():
    fs, _ = make_fs()
    ino = fs.lookup(1, "main.db").ino
    with pytest.raises(ValueError):
        fs.forget(ino, 2)
    fs.forget(ino, 1)
    with pytest.raises(OSError) as info:
        fs.readlink(ino)
    assert info.value.errno == errno.ENOENT