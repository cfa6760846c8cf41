"""A page-addressed view of one namespace, driven by file lock transitions."""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from itertools import islice
from typing import Any, TypeVar

from cachetools import LRUCache

from .client import CommitStatus, StatusCodeError, TimeToVersionResponse
from .history import TransitionHistory
from .template import first_page_template
from .types import LockKind

_log = logging.getLogger(__name__)

_PREDICT_DEPTH = 10
_FLUSH_THRESHOLD = 1000
_READ_SET_LIMIT = 2000
_MAX_PAGE_INDEX = 0xFFFFFFFF
_GONE = 410
_U32 = struct.Struct(">I")

_T = TypeVar("_T")


@dataclass
class Settings:
    """Process-wide tuning knobs."""

    page_cache_size: int = 5000
    write_chunk_size: int = 10
    prefetch_depth: int = 0


SETTINGS = Settings()


def _chunks(items: Iterable[_T], size: int) -> Iterator[list[_T]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    iterator = iter(items)
    while chunk := list(islice(iterator, size)):
        yield chunk


def _status_of(exc: BaseException | None) -> int | None:
    while exc is not None:
        if isinstance(exc, StatusCodeError):
            return exc.status
        exc = exc.__cause__ or exc.__context__
    return None


class Connection:
    """Serves page reads and writes for a database file backed by the page store."""

    def __init__(
        self,
        client: Any,
        dp: Any,
        fixed_version: str | None,
        sector_size: int,
        page_cache_size: int | None = None,
    ) -> None:
        self.client = client
        self.dp = dp
        self.fixed_version = fixed_version
        self.sector_size = sector_size
        self.first_page = first_page_template(sector_size)
        self._txn: Any = None
        self._lock = LockKind.NONE
        self._commit_confirmed = False
        self._history = TransitionHistory()
        size = SETTINGS.page_cache_size if page_cache_size is None else page_cache_size
        self._page_cache: LRUCache[int, bytes] = LRUCache(maxsize=size)
        self._write_buffer: dict[int, bytes] = {}
        self._virtual_version_counter = 0
        self._last_known_write_version: str | None = None

    @property
    def transaction(self) -> Any:
        """The active transaction, or ``None``."""
        return self._txn

    def last_known_version(self) -> str | None:
        return self._last_known_write_version

    def _require_txn(self) -> Any:
        if self._txn is None:
            raise RuntimeError("no active transaction")
        return self._txn

    def _page_index(self, offset: int) -> int:
        if offset < 0 or offset % self.sector_size:
            raise ValueError(f"offset {offset} is not page aligned")
        index = offset // self.sector_size
        if index > _MAX_PAGE_INDEX:
            raise ValueError(f"offset {offset} is out of range")
        return index

    async def do_read_raw(self, offset: int) -> bytes:
        """Read the page at ``offset`` as stored, prefetching likely next pages."""
        page_index = self._page_index(offset)
        txn = self._require_txn()
        txn.mark_read(page_index)
        self._history.record(page_index)

        cached = self._page_cache.get(page_index)
        if cached is not None:
            return cached
        buffered = self._write_buffer.get(page_index)
        if buffered is not None:
            return buffered

        predicted = self._history.multi_predict(page_index, _PREDICT_DEPTH)
        step = 1
        while len(predicted) < SETTINGS.prefetch_depth:
            predicted.add(page_index + step)
            step += 1
        prefetch = sorted(p for p in predicted if p not in self._page_cache)
        _log.debug("prefetch miss: index=%d next=%s", page_index, prefetch)

        read_vec = [page_index, *prefetch]
        pages = await txn.read_many_nomark(read_vec)
        if len(pages) != len(read_vec):
            raise RuntimeError("unexpected number of pages returned")

        page = pages[0]
        if not page:
            if offset != 0:
                raise RuntimeError(f"read on non-existing page: offset={offset}")
            page = self.first_page
        elif len(page) != self.sector_size:
            _log.error(
                "page size mismatch: actual=%d sector_size=%d", len(page), self.sector_size
            )
            raise OSError("page size mismatch")
        page = bytes(page)
        self._page_cache[page_index] = page

        for other, other_index in zip(pages[1:], read_vec[1:]):
            if other_index != 0 and other:
                self._page_cache[other_index] = bytes(other)
        return page

    async def do_read(self, offset: int) -> bytes:
        """Read a page, stamping the virtual change counter into page 1."""
        page = await self.do_read_raw(offset)
        if offset == 0:
            counter = _U32.pack(self._virtual_version_counter)
            page = page[:24] + counter + page[28:92] + counter + page[96:]
        return page

    async def force_flush_write_buffer(self) -> None:
        """Upload every buffered page."""
        txn = self._require_txn()
        if not self._write_buffer:
            return
        for chunk in _chunks(list(self._write_buffer.items()), SETTINGS.write_chunk_size):
            await txn.write_many(chunk)
        self._write_buffer.clear()

    async def maybe_flush_write_buffer(self) -> None:
        if len(self._write_buffer) >= _FLUSH_THRESHOLD:
            await self.force_flush_write_buffer()

    async def time2version(self, timestamp: int) -> TimeToVersionResponse:
        return await self.client.time2version(self.dp, timestamp)

    def pin_version(self, version: str) -> None:
        if self._txn is not None:
            raise RuntimeError("cannot pin version while transaction is active")
        self.fixed_version = version

    def unpin_version(self) -> None:
        if self._txn is not None:
            raise RuntimeError("cannot unpin version while transaction is active")
        self.fixed_version = None

    def _invalidate(self, indices: Iterable[int]) -> None:
        for index in indices:
            self._page_cache.pop(index, None)

    async def _finalize_transaction(self, commit: bool) -> bool:
        if len(self._write_buffer) > SETTINGS.write_chunk_size:
            await self.force_flush_write_buffer()

        txn = self._txn
        if txn is None:
            raise RuntimeError("did not find transaction for commit")
        self._txn = None

        read_version = txn.version
        ns_key = self.client.config.ns_key

        # A commit with a huge read set is unlikely to succeed; drop it to save bandwidth.
        if txn.read_set_size() > _READ_SET_LIMIT:
            txn.disable_read_set()

        dirty_pages = set(txn.written_pages()) | set(self._write_buffer)

        discard_reason = None
        if not commit:
            discard_reason = "did not receive confirmation from sqlite"
        elif self.fixed_version is not None:
            discard_reason = "write to snapshot is dropped"

        if discard_reason is not None:
            self._invalidate(dirty_pages)
            self._write_buffer.clear()
            _log.warning(
                "discarding transaction: dirty_page_count=%d reason=%s",
                len(dirty_pages),
                discard_reason,
            )
            return True

        fast_write_size = len(self._write_buffer)
        try:
            output = await txn.commit(None, dict(self._write_buffer))
        finally:
            self._write_buffer.clear()

        if output.status is CommitStatus.COMMITTED:
            result = output.result
            self._last_known_write_version = result.version
            changelog = result.changelog.get(ns_key)
            if changelog is None:
                self._page_cache.clear()
                _log.warning("non-local concurrent transaction detected, invalidating cache")
            elif changelog:
                self._invalidate(changelog)
                _log.info(
                    "non-local concurrent transaction detected, partial cache flush: count=%d",
                    len(changelog),
                )
            self._txn = self.client.create_transaction_at_version(self.dp, result.version, False)
            _log.info(
                "transaction committed: version=%s duration=%s num_pages=%d "
                "fast_write_size=%d read_version=%s",
                result.version,
                result.duration,
                result.num_pages,
                fast_write_size,
                read_version,
            )
            return True

        if output.status is CommitStatus.CONFLICT:
            self._invalidate(dirty_pages)
            _log.warning("transaction conflict: dirty_page_count=%d", len(dirty_pages))
            return False

        _log.info("transaction is empty")
        self._txn = self.client.create_transaction_at_version(self.dp, read_version, False)
        return True

    async def size(self) -> int:
        """Database size in bytes, from the page count in page 1."""
        if self._txn is None:
            _log.warning("file_size called without a transaction")
            return self.sector_size
        first = await self.read_exact_at(self.sector_size, 0)
        (num_pages,) = _U32.unpack_from(first, 28)
        return self.sector_size * num_pages

    async def read_exact_at(self, length: int, offset: int) -> bytes:
        """Read ``length`` bytes at ``offset``."""
        if self._txn is None:
            if offset != 0:
                raise ValueError("only the header can be read without a transaction")
            if length > self.sector_size:
                raise ValueError("read past the first page without a transaction")
            if length != 100:
                _log.warning("header read without a transaction with non-standard size %d", length)
            return self.first_page[:length]

        if offset % self.sector_size or length % self.sector_size:
            if not (
                offset < self.sector_size
                and length < self.sector_size
                and offset + length <= self.sector_size
            ):
                raise ValueError("unexpected read")
            page = await self.do_read(0)
            return page[offset : offset + length]

        if length != self.sector_size:
            raise ValueError("reads must cover exactly one page")
        return await self.do_read(offset)

    async def write_all_at(self, data: bytes, offset: int) -> None:
        """Write one full page at ``offset``."""
        page_index = self._page_index(offset)
        if len(data) != self.sector_size:
            raise ValueError("writes must cover exactly one page")

        buf = bytearray(data)
        self._history.prev_index = 0
        if self._txn is None:
            raise RuntimeError("cannot write to a database without a transaction")

        if offset == 0:
            if int.from_bytes(buf[16:18], "big") != self.sector_size:
                raise ValueError("attempting to change page size")
            if buf[18] == 2 or buf[19] == 2:
                raise ValueError("attempting to enable wal mode")
            buf[24:28] = bytes(4)
            buf[92:96] = bytes(4)

        page = bytes(buf)
        if self._page_cache.get(page_index) == page:
            _log.info("identity write ignored: page=%d", page_index)
            return

        self._page_cache[page_index] = page
        self._write_buffer[page_index] = page
        await self.maybe_flush_write_buffer()

    async def lock(self, kind: LockKind) -> bool:
        """Raise the lock level, starting a transaction if none is active."""
        if kind is LockKind.NONE:
            raise ValueError("cannot lock to NONE")
        if self._lock == kind:
            return True

        if self._txn is None:
            interval = None
            if self.fixed_version is not None:
                txn = self.client.create_transaction_at_version(self.dp, self.fixed_version, True)
            else:
                try:
                    txn, info = await self.client.create_transaction_with_info(
                        self.dp, self._last_known_write_version
                    )
                except Exception as exc:
                    _log.error(
                        "transaction initialization failed: ns_key=%s error=%s",
                        self.client.config.ns_key,
                        exc,
                    )
                    if _status_of(exc) == _GONE:
                        raise OSError(
                            "this client can no longer start transactions on this database"
                        ) from exc
                    return False
                interval = info.interval

            if self._last_known_write_version != txn.version:
                if interval is not None:
                    self._invalidate(interval)
                    _log.info("non-local change detected, partial cache flush: count=%d", len(interval))
                else:
                    self._page_cache.clear()
                    if self._last_known_write_version is not None:
                        _log.warning("non-local change detected, invalidating cache")
                self._last_known_write_version = txn.version

            txn.enable_read_set()
            self._txn = txn
            # Make the database engine drop its own page cache.
            self._virtual_version_counter = (self._virtual_version_counter + 2) & _MAX_PAGE_INDEX

        self._lock = kind
        if self._commit_confirmed:
            raise RuntimeError("commit confirmed before lock")
        return True

    async def unlock(self, kind: LockKind) -> bool:
        """Lower the lock level, committing when leaving a write lock."""
        if kind == self._lock:
            return True
        previous = self._lock
        self._lock = kind

        reserved = LockKind.RESERVED.level()
        if previous.level() >= reserved and kind.level() < reserved:
            confirmed = self._commit_confirmed
            self._commit_confirmed = False
            ok = await self._finalize_transaction(confirmed)
        else:
            ok = True

        if kind is LockKind.NONE:
            self._txn = None
            self._history.prev_index = 0
        return ok

    def confirm_commit(self) -> None:
        if self._commit_confirmed:
            raise RuntimeError("commit already confirmed")
        self._commit_confirmed = True

    def reserved(self) -> bool:
        return False

    def current_lock(self) -> LockKind:
        return self._lock