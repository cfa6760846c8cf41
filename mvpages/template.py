"""First page of an empty database, used before the namespace has any data."""

from __future__ import annotations

import struct
from functools import lru_cache

SUPPORTED_SECTOR_SIZES = (4096, 8192, 16384, 32768)

_MAGIC = b"SQLite format 3\x00"
_HEADER = struct.Struct(">16sHBBBBBB12I20sII")
_BTREE_HEADER = struct.Struct(">BHHHB")
_LEAF_TABLE_PAGE = 0x0D
_ROLLBACK_JOURNAL = 1
_SCHEMA_FORMAT = 4
_UTF8 = 1
_LIBRARY_VERSION = 3038002


@lru_cache(maxsize=None)
def first_page_template(sector_size: int) -> bytes:
    """Return page 1 of an empty rollback-journal database with the given page size."""
    if sector_size not in SUPPORTED_SECTOR_SIZES:
        raise ValueError(f"unsupported sector size: {sector_size}")

    page = bytearray(sector_size)
    _HEADER.pack_into(
        page,
        0,
        _MAGIC,
        sector_size,
        _ROLLBACK_JOURNAL,
        _ROLLBACK_JOURNAL,
        0,  # reserved bytes per page
        64,  # maximum embedded payload fraction
        32,  # minimum embedded payload fraction
        32,  # leaf payload fraction
        1,  # file change counter
        1,  # database size in pages
        0,  # first freelist trunk page
        0,  # freelist page count
        0,  # schema cookie
        _SCHEMA_FORMAT,
        0,  # default page cache size
        0,  # largest root page for auto-vacuum
        _UTF8,
        0,  # user version
        0,  # incremental vacuum
        0,  # application id
        b"",
        1,  # version-valid-for
        _LIBRARY_VERSION,
    )
    _BTREE_HEADER.pack_into(page, _HEADER.size, _LEAF_TABLE_PAGE, 0, 0, sector_size, 0)
    return bytes(page)