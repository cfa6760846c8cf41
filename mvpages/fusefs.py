"""Filesystem front end that exposes namespaces as database files.

Each configured namespace appears in the root directory as a symlink to a
fresh ``ns<index>-<n>.db`` file. Every such file gets its own connection, and
its rollback journal is kept in memory. POSIX record locks on a database file
are turned into lock transitions on its connection.
"""

from __future__ import annotations

import asyncio
import enum
import errno
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .types import LockKind

_log = logging.getLogger(__name__)

ROOT_INODE = 1
SYMLINK_INODE_BASE = 1048576 * 1
DB_INODE_BASE = 1048576 * 2
TEMP_INODE_BASE = 1048576 * 3
FAKE_INODE_BASE = 1048576 * 4

# Record lock types as used by fcntl on Linux.
F_RDLCK = 0
F_WRLCK = 1
F_UNLCK = 2

_DB_NAME = re.compile(r"ns([0-9]+)-([0-9]+)", re.ASCII)
_U64_MAX = 0xFFFFFFFFFFFFFFFF

_T = TypeVar("_T")


def _fs_error(code: int, message: str) -> OSError:
    return OSError(code, message)


@dataclass(frozen=True)
class DbName:
    """Namespace index and identity offset parsed from a database file name."""

    ns: int
    fakeino_delta: int


def parse_db_name(name: str) -> DbName | None:
    """Parse ``ns<index>-<delta>``; ``None`` if the name does not match."""
    match = _DB_NAME.fullmatch(name)
    if match is None:
        return None
    ns, delta = int(match.group(1)), int(match.group(2))
    if ns > _U64_MAX or delta > _U64_MAX:
        return None
    return DbName(ns=ns, fakeino_delta=delta)


def parse_namespaces(spec: str) -> dict[str, str]:
    """Parse ``file1=ns1,file2=ns2`` into an ordered mapping."""
    mapping: dict[str, str] = {}
    for item in spec.split(","):
        key, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"invalid namespace mapping: {item}")
        mapping[key] = value
    return mapping


def lock_type_to_lockkind(typ: int) -> LockKind:
    """Map a record lock type to a lock level."""
    kinds = {F_RDLCK: LockKind.SHARED, F_WRLCK: LockKind.EXCLUSIVE, F_UNLCK: LockKind.NONE}
    try:
        return kinds[typ]
    except KeyError:
        raise ValueError(f"invalid lock type: {typ}") from None


def fixup_read_shift(offset: int, size: int, buf: bytes) -> bytes:
    """Cut the part of a page that a read at ``offset`` of ``size`` bytes asks for."""
    if offset < 0:
        raise ValueError("negative offset")
    if size <= 0:
        raise ValueError("empty read")
    page = len(buf)
    if size > page:
        raise ValueError("read larger than a page")
    if offset // page != (offset + size - 1) // page:
        raise ValueError("read crosses a page boundary")
    start = offset % page
    return bytes(buf[start : start + size])


class FileType(enum.Enum):
    REGULAR_FILE = "regular_file"
    SYMLINK = "symlink"


@dataclass
class FileAttr:
    """Attributes reported for an inode; all timestamps are the epoch."""

    ino: int
    size: int
    blocks: int
    kind: FileType
    perm: int
    uid: int
    gid: int
    blksize: int
    nlink: int = 1
    rdev: int = 0
    flags: int = 0
    atime: float = 0.0
    mtime: float = 0.0
    ctime: float = 0.0
    crtime: float = 0.0


class _Slab(Generic[_T]):
    """Keyed storage that reuses the most recently freed key."""

    def __init__(self) -> None:
        self._items: dict[int, _T] = {}
        self._free: list[int] = []
        self._next = 0

    def insert(self, value: _T) -> int:
        if self._free:
            key = self._free.pop()
        else:
            key = self._next
            self._next += 1
        self._items[key] = value
        return key

    def get(self, key: int) -> _T | None:
        return self._items.get(key)

    def remove(self, key: int) -> _T:
        value = self._items.pop(key)
        self._free.append(key)
        return value

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class _EphemeralInode:
    refcount: int
    ns: int
    fakeino: int
    conn: Any = None
    conn_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    locks: dict[tuple[int, int], LockKind] = field(default_factory=dict)


@dataclass
class _TempInode:
    refcount: int
    fakeino: int
    data: bytearray = field(default_factory=bytearray)


@dataclass
class _SymlinkInode:
    refcount: int
    target: bytes


def _is_symlink(ino: int) -> bool:
    return SYMLINK_INODE_BASE <= ino < DB_INODE_BASE


def _is_db(ino: int) -> bool:
    return DB_INODE_BASE <= ino < TEMP_INODE_BASE


def _is_temp(ino: int) -> bool:
    return ino >= TEMP_INODE_BASE


def _strip_suffix(name: str, suffix: str) -> str:
    while name.endswith(suffix):
        name = name[: -len(suffix)]
    return name


class FuseFs:
    """Inode bookkeeping and file operations for the namespace filesystem."""

    def __init__(self, namespaces: Mapping[str, str], vfs: Any) -> None:
        self.namespaces: list[tuple[str, str]] = list(namespaces.items())
        self.vfs = vfs
        self.sector_size: int = vfs.sector_size
        self._ephemeral = _Slab[_EphemeralInode]()
        self.ns_to_ephemeral_inode: dict[int, set[int]] = {}
        self._temp = _Slab[_TempInode]()
        self._symlinks = _Slab[_SymlinkInode]()
        self._next_fh = 1
        self._next_fakeino_delta = 0

    def _ns_index(self, name: str) -> int | None:
        for index, (key, _) in enumerate(self.namespaces):
            if key == name:
                return index
        return None

    def _valid_db_name(self, prefix: str) -> DbName | None:
        parsed = parse_db_name(prefix)
        if parsed is None or parsed.ns >= len(self.namespaces):
            return None
        return parsed

    def _attr(self, ino: int, uid: int, gid: int, **overrides: Any) -> FileAttr:
        values: dict[str, Any] = {
            "ino": ino,
            "size": 0,
            "blocks": 0,
            "kind": FileType.REGULAR_FILE,
            "perm": 0o644,
            "uid": uid,
            "gid": gid,
            "blksize": self.sector_size,
        }
        values.update(overrides)
        return FileAttr(**values)

    def _db_inode(self, ino: int) -> _EphemeralInode:
        inode = self._ephemeral.get(ino - DB_INODE_BASE)
        if inode is None:
            raise _fs_error(errno.ENOENT, f"no such inode: {ino}")
        return inode

    def _temp_inode(self, ino: int) -> _TempInode:
        inode = self._temp.get(ino - TEMP_INODE_BASE)
        if inode is None:
            raise _fs_error(errno.ENOENT, f"no such inode: {ino}")
        return inode

    def _symlink_inode(self, ino: int) -> _SymlinkInode:
        inode = self._symlinks.get(ino - SYMLINK_INODE_BASE)
        if inode is None:
            raise _fs_error(errno.ENOENT, f"no such inode: {ino}")
        return inode

    @staticmethod
    def _connection(inode: _EphemeralInode) -> Any:
        if inode.conn is None:
            raise _fs_error(errno.EBADF, "database file is not open")
        return inode.conn

    def _allocate_fh(self) -> int:
        fh = self._next_fh
        self._next_fh += 1
        return fh

    def lookup(self, parent: int, name: str, uid: int = 0, gid: int = 0) -> FileAttr:
        """Resolve ``name`` in the root directory, creating a new inode for it."""
        if parent != ROOT_INODE:
            raise _fs_error(errno.ENOENT, name)

        ns = self._ns_index(name)
        if ns is not None:
            delta = self._next_fakeino_delta
            self._next_fakeino_delta += 1
            raw = self._symlinks.insert(
                _SymlinkInode(refcount=1, target=f"ns{ns}-{delta}.db".encode())
            )
            return self._attr(
                raw + SYMLINK_INODE_BASE, uid, gid, kind=FileType.SYMLINK, perm=0o777
            )

        if name.endswith(".db"):
            parsed = self._valid_db_name(_strip_suffix(name, ".db"))
            if parsed is not None:
                raw = self._ephemeral.insert(
                    _EphemeralInode(
                        refcount=1,
                        ns=parsed.ns,
                        fakeino=(FAKE_INODE_BASE + parsed.fakeino_delta) * 2,
                    )
                )
                ino = raw + DB_INODE_BASE
                if ino >= TEMP_INODE_BASE:
                    self._ephemeral.remove(raw)
                    raise _fs_error(errno.ENOSPC, "too many database inodes")
                self.ns_to_ephemeral_inode.setdefault(parsed.ns, set()).add(ino)
                return self._attr(ino, uid, gid, size=self.sector_size, blocks=1)
        elif name.endswith(".db-journal"):
            parsed = self._valid_db_name(_strip_suffix(name, ".db-journal"))
            if parsed is not None:
                raw = self._temp.insert(
                    _TempInode(
                        refcount=1, fakeino=(FAKE_INODE_BASE + parsed.fakeino_delta) * 2 + 1
                    )
                )
                return self._attr(raw + TEMP_INODE_BASE, uid, gid)

        raise _fs_error(errno.ENOENT, name)

    def forget(self, ino: int, nlookup: int) -> None:
        """Drop ``nlookup`` references to ``ino``, freeing it at zero."""
        if _is_symlink(ino):
            inode: Any = self._symlink_inode(ino)
        elif _is_db(ino):
            inode = self._db_inode(ino)
        elif _is_temp(ino):
            inode = self._temp_inode(ino)
        else:
            return
        if inode.refcount < nlookup:
            raise ValueError("forget count exceeds lookup count")
        inode.refcount -= nlookup
        if inode.refcount:
            return
        if _is_symlink(ino):
            self._symlinks.remove(ino - SYMLINK_INODE_BASE)
            _log.debug("removed symlink inode: ino=%d", ino)
        elif _is_db(ino):
            self.ns_to_ephemeral_inode.get(inode.ns, set()).discard(ino)
            self._ephemeral.remove(ino - DB_INODE_BASE)
            _log.debug("removed ephemeral inode: ino=%d", ino)
        else:
            self._temp.remove(ino - TEMP_INODE_BASE)
            _log.debug("removed temp inode: ino=%d", ino)

    def open(self, ino: int) -> int:
        """Open a file and return its handle; database files get a connection."""
        if _is_db(ino):
            inode = self._db_inode(ino)
            if inode.conn is not None:
                raise _fs_error(errno.EBUSY, "database file is already open")
            self.ns_to_ephemeral_inode.get(inode.ns, set()).discard(ino)
            ns_name, namespace = self.namespaces[inode.ns]
            try:
                inode.conn = self.vfs.open(namespace, False)
            except Exception as exc:
                _log.error("failed to open namespace: ns=%s error=%s", ns_name, exc)
                raise _fs_error(errno.EIO, "failed to open namespace") from exc
            return self._allocate_fh()
        if _is_temp(ino):
            return self._allocate_fh()
        raise _fs_error(errno.ENOENT, f"no such inode: {ino}")

    async def _lock_bookkeeping(self, inode: _EphemeralInode) -> None:
        ns_name = self.namespaces[inode.ns][0]
        desired = max(inode.locks.values(), default=LockKind.NONE)
        conn = self._connection(inode)
        async with inode.conn_lock:
            current = conn.current_lock()
            _log.debug(
                "lock bookkeeping: ns=%s current=%s desired=%s", ns_name, current, desired
            )
            try:
                if desired.level() > current.level():
                    ok = await conn.lock(desired)
                elif desired.level() < current.level():
                    ok = await conn.unlock(desired)
                else:
                    ok = True
            except Exception as exc:
                _log.error(
                    "lock error: ns=%s error=%s current=%s desired=%s",
                    ns_name,
                    exc,
                    current,
                    desired,
                )
                raise _fs_error(errno.EIO, "lock error") from exc
        if not ok:
            raise _fs_error(errno.EACCES, "lock not acquired")

    async def setlk(self, ino: int, start: int, end: int, typ: int, sleep: bool = False) -> None:
        """Set or clear a record lock and move the connection to the strongest held level."""
        if sleep:
            raise ValueError("blocking locks are not supported")
        if not _is_db(ino):
            return
        inode = self._db_inode(ino)
        for key in [k for k in inode.locks if k[0] >= start and k[1] <= end]:
            del inode.locks[key]
        kind = lock_type_to_lockkind(typ)
        if kind is not LockKind.NONE:
            inode.locks[(start, end)] = kind
        await self._lock_bookkeeping(inode)

    async def read(self, ino: int, offset: int, size: int) -> bytes:
        """Read ``size`` bytes at ``offset``."""
        if _is_temp(ino):
            if offset < 0:
                raise ValueError("negative offset")
            data = self._temp_inode(ino).data
            return bytes(data[min(offset, len(data)) : min(offset + size, len(data))])
        if not _is_db(ino):
            _log.debug("unknown read: ino=%d", ino)
            raise _fs_error(errno.EIO, "read on unknown inode")

        inode = self._db_inode(ino)
        conn = self._connection(inode)
        ns_name = self.namespaces[inode.ns][0]
        page_offset = (offset // self.sector_size) * self.sector_size
        async with inode.conn_lock:
            try:
                page = await conn.read_exact_at(self.sector_size, page_offset)
            except OSError as exc:
                _log.error("read error: ns=%s error=%s", ns_name, exc)
                raise _fs_error(errno.EIO, "read error") from exc
        return fixup_read_shift(offset, size, page)

    async def write(self, ino: int, offset: int, data: bytes) -> int:
        """Write ``data`` at ``offset`` and return the number of bytes written."""
        if _is_temp(ino):
            if offset < 0:
                raise ValueError("negative offset")
            buf = self._temp_inode(ino).data
            end = offset + len(data)
            if end > len(buf):
                buf.extend(bytes(end - len(buf)))
            buf[offset:end] = data
            return len(data)
        if not _is_db(ino):
            _log.debug("unknown write: ino=%d", ino)
            raise _fs_error(errno.EIO, "write on unknown inode")

        inode = self._db_inode(ino)
        conn = self._connection(inode)
        ns_name = self.namespaces[inode.ns][0]
        async with inode.conn_lock:
            try:
                await conn.write_all_at(bytes(data), offset)
            except OSError as exc:
                _log.error("write error: ns=%s error=%s", ns_name, exc)
                raise _fs_error(errno.EIO, "write error") from exc
        return len(data)

    def flush(self, ino: int) -> None:
        """Nothing is buffered at this level."""

    async def getattr(self, ino: int, uid: int = 0, gid: int = 0) -> FileAttr:
        """Attributes of ``ino``; files report a stable fake inode number."""
        if _is_temp(ino):
            inode = self._temp_inode(ino)
            size = len(inode.data)
            return self._attr(inode.fakeino, uid, gid, size=size, blocks=size // self.sector_size)
        if _is_symlink(ino):
            link = self._symlink_inode(ino)
            return self._attr(
                ino, uid, gid, size=len(link.target), blocks=1, kind=FileType.SYMLINK, perm=0o777
            )
        if not _is_db(ino):
            raise _fs_error(errno.ENOENT, f"no such inode: {ino}")

        db = self._db_inode(ino)
        if db.conn is None:
            return self._attr(db.fakeino, uid, gid, size=self.sector_size, blocks=1)
        ns_name = self.namespaces[db.ns][0]
        async with db.conn_lock:
            try:
                size = await db.conn.size()
            except OSError as exc:
                _log.error("getattr error: ns=%s error=%s", ns_name, exc)
                raise _fs_error(errno.EIO, "getattr error") from exc
        return self._attr(db.fakeino, uid, gid, size=size, blocks=size // self.sector_size)

    def unlink(self, parent: int, name: str) -> None:
        """Deleting files is accepted and ignored."""

    def readlink(self, ino: int) -> bytes:
        """Target of a namespace symlink, NUL terminated."""
        if _is_symlink(ino):
            return self._symlink_inode(ino).target + b"\x00"
        raise _fs_error(errno.ENOENT, f"no such inode: {ino}")