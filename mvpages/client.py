"""Asynchronous client for the multi-version page store's data plane."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
import random
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import httpx
import msgpack
import zstandard

from .backoff import RandomizedExponentialBackoff
from .hashing import blake3_digest
from .wire import FINAL_FRAME, WireError, encode_frames, iter_frames

_log = logging.getLogger(__name__)

_MAX_DECOMPRESSED_PAGE = 1048576
_BACKGROUND_WRITE_LIMIT = 32

DataPlane = Union[str, httpx.URL]


class StatusCodeError(Exception):
    """The server answered with a non-retryable status code."""

    def __init__(self, status: int) -> None:
        super().__init__(f"status {status}")
        self.status = status


class CommitError(Exception):
    """A commit was rejected with a status code other than a conflict."""

    def __init__(self, status: int) -> None:
        super().__init__(f"commit error: {status}")
        self.status = status


@dataclass
class ClientConfig:
    """Where the data plane lives and which namespace to work on."""

    data_plane: list[str]
    ns_key: str
    ns_key_hashproof: str | None = None
    lock_owner: str | None = None

    def random_data_plane(self) -> str:
        """Pick one of the configured data plane addresses at random."""
        if not self.data_plane:
            raise ValueError("no data plane address configured")
        return random.choice(self.data_plane)


@dataclass
class CommitResult:
    version: str
    duration: float
    num_pages: int
    changelog: dict[str, list[int]]


class CommitStatus(enum.Enum):
    COMMITTED = "committed"
    CONFLICT = "conflict"
    EMPTY = "empty"


@dataclass
class CommitOutput:
    status: CommitStatus
    result: CommitResult | None = None


@dataclass
class TimeToVersionPoint:
    version: str
    time: int

    @classmethod
    def from_json(cls, value: Mapping[str, Any] | None) -> TimeToVersionPoint | None:
        if value is None:
            return None
        return cls(version=value["version"], time=int(value["time"]))


@dataclass
class TimeToVersionResponse:
    after: TimeToVersionPoint | None
    not_after: TimeToVersionPoint | None


@dataclass
class TransactionInfo:
    metadata: str
    interval: list[int] | None


@dataclass
class CommitNamespaceInit:
    ns_key: str
    ns_key_hashproof: str | None
    version: str
    metadata: str | None
    num_pages: int
    read_set: set[int] | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "ns_key": self.ns_key,
            "ns_key_hashproof": self.ns_key_hashproof,
            "version": self.version,
            "metadata": self.metadata,
            "num_pages": self.num_pages,
            "read_set": None if self.read_set is None else sorted(self.read_set),
        }


@dataclass
class CommitRequest:
    page_index: int
    hash: bytes
    data: bytes | None = None

    def to_message(self) -> dict[str, Any]:
        return {"page_index": self.page_index, "hash": self.hash, "data": self.data}


@dataclass
class NamespaceCommitIntent:
    init: CommitNamespaceInit
    requests: list[CommitRequest] = field(default_factory=list)


def _endpoint(base: DataPlane, path: str, params: Iterable[tuple[str, str]] = ()) -> httpx.URL:
    url = httpx.URL(str(base)).copy_with(path=path)
    for key, value in params:
        url = url.copy_add_param(key, value)
    return url


def _decompress(data: bytes) -> bytes:
    return zstandard.ZstdDecompressor().decompress(data, max_output_size=_MAX_DECOMPRESSED_PAGE)


class MultiVersionClient:
    """Talks to the data plane on behalf of one namespace."""

    def __init__(self, config: ClientConfig, http: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self.http = http if http is not None else httpx.AsyncClient()

    def _base(self, dp: DataPlane | None) -> DataPlane:
        return dp if dp is not None else self.config.random_data_plane()

    def _namespace_headers(self) -> dict[str, str]:
        headers = {"x-namespace-key": self.config.ns_key}
        if self.config.ns_key_hashproof is not None:
            headers["x-namespace-hashproof"] = self.config.ns_key_hashproof
        return headers

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        *,
        content: bytes | None = None,
        decorate: bool = True,
    ) -> tuple[httpx.Headers, bytes] | None:
        """Send a request; ``None`` means a retryable failure."""
        headers = self._namespace_headers() if decorate else {}
        try:
            response = await self.http.request(method, url, headers=headers, content=content)
        except httpx.TransportError as exc:
            _log.error("network error: %s", exc)
            return None
        if response.is_success:
            return response.headers, response.content
        if response.is_server_error:
            _log.error("server error: status=%s text=%s", response.status_code, response.text)
            return None
        _log.warning("client error: status=%s text=%s", response.status_code, response.text)
        raise StatusCodeError(response.status_code)

    async def _get_json(self, url: httpx.URL) -> Any:
        backoff = RandomizedExponentialBackoff()
        while True:
            response = await self._send("GET", url)
            if response is None:
                await backoff.wait()
                continue
            return json.loads(response[1])

    async def create_transaction(self, dp: DataPlane | None = None) -> Transaction:
        """Start a transaction at the latest version."""
        txn, _ = await self.create_transaction_with_info(dp)
        return txn

    async def create_transaction_with_info(
        self, dp: DataPlane | None = None, from_version: str | None = None
    ) -> tuple[Transaction, TransactionInfo]:
        """Start a transaction at the latest version and report namespace information."""
        params: list[tuple[str, str]] = []
        if from_version is not None:
            params.append(("from_version", from_version))
        if self.config.lock_owner is not None:
            params.append(("lock_owner", self.config.lock_owner))
        stat = await self._get_json(_endpoint(self._base(dp), "/stat", params))

        _log.debug("created transaction: version=%s metadata=%s", stat["version"], stat["metadata"])
        txn = self.create_transaction_at_version(dp, stat["version"], bool(stat["read_only"]))
        interval = stat.get("interval")
        info = TransactionInfo(
            metadata=stat["metadata"],
            interval=None if interval is None else [int(i) for i in interval],
        )
        return txn, info

    def create_transaction_at_version(
        self, dp: DataPlane | None, version: str, read_only: bool
    ) -> Transaction:
        """Start a transaction that reads at ``version``."""
        return Transaction(self, dp, version, read_only)

    async def apply_commit_intents(
        self, dp: DataPlane | None, intents: list[NamespaceCommitIntent]
    ) -> CommitResult | None:
        """Commit the intents atomically; ``None`` means a conflict."""
        if not intents:
            raise ValueError("no commit intents")

        start = time.monotonic()
        url = _endpoint(self._base(dp), "/batch/commit")
        idempotency_key = os.urandom(16)
        backoff = RandomizedExponentialBackoff()
        allow_skip_idempotency_check = True  # only for the first attempt

        while True:
            global_init = {
                "idempotency_key": idempotency_key,
                "allow_skip_idempotency_check": allow_skip_idempotency_check,
                "num_namespaces": len(intents),
                "lock_owner": self.config.lock_owner,
            }
            allow_skip_idempotency_check = False

            messages: list[dict[str, Any]] = [global_init]
            for intent in intents:
                messages.append(intent.init.to_message())
                messages.extend(request.to_message() for request in intent.requests)
            total_num_pages = sum(len(intent.requests) for intent in intents)

            try:
                response = await self._send(
                    "POST", url, content=encode_frames(messages), decorate=False
                )
            except StatusCodeError as exc:
                if exc.status == 409:
                    return None
                raise CommitError(exc.status) from exc
            if response is None:
                await backoff.wait()
                continue

            headers, body = response
            decoded = msgpack.unpackb(body, raw=False, strict_map_key=False)
            raw_changelog = decoded["changelog"] if isinstance(decoded, dict) else decoded[0]
            version = headers.get("x-committed-version")
            if version is None:
                raise RuntimeError("missing committed version header")
            _log.debug("committed transaction: version=%s", version)
            return CommitResult(
                version=version,
                duration=time.monotonic() - start,
                num_pages=total_num_pages,
                changelog={str(k): [int(i) for i in v] for k, v in raw_changelog.items()},
            )

    async def time2version(self, dp: DataPlane | None, timestamp: int) -> TimeToVersionResponse:
        """Find the versions around a point in time."""
        url = _endpoint(self._base(dp), "/time2version", [("t", str(timestamp))])
        result = await self._get_json(url)
        return TimeToVersionResponse(
            after=TimeToVersionPoint.from_json(result.get("after")),
            not_after=TimeToVersionPoint.from_json(result.get("not_after")),
        )


class Transaction:
    """A snapshot read view with buffered, asynchronously uploaded page writes."""

    def __init__(
        self, client: MultiVersionClient, dp: DataPlane | None, version: str, read_only: bool
    ) -> None:
        self.client = client
        self.dp = dp
        self._version = version
        self._read_only = read_only
        self._page_buffer: dict[int, bytes] = {}
        self._seen_hashes: set[bytes] = set()
        self._read_set: set[int] | None = None
        self._background_slots = asyncio.Semaphore(_BACKGROUND_WRITE_LIMIT)
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._async_error = False

    @property
    def version(self) -> str:
        return self._version

    @property
    def read_only(self) -> bool:
        return self._read_only

    def page_is_written(self, page_id: int) -> bool:
        return page_id in self._page_buffer

    def written_pages(self) -> list[int]:
        return list(self._page_buffer)

    def enable_read_set(self) -> None:
        if self._read_set is None:
            self._read_set = set()

    def disable_read_set(self) -> None:
        self._read_set = None

    def read_set_size(self) -> int:
        return 0 if self._read_set is None else len(self._read_set)

    def is_read_set_enabled(self) -> bool:
        return self._read_set is not None

    def mark_read(self, page_id: int) -> None:
        if self._read_set is not None:
            self._read_set.add(page_id)

    def _base(self) -> DataPlane:
        return self.client._base(self.dp)

    def _check_async_error(self) -> None:
        if self._async_error:
            raise RuntimeError("async error")

    async def _wait_for_background_writes(self) -> None:
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def read_many_nomark(self, page_ids: Iterable[int]) -> list[bytes]:
        """Read pages at this transaction's version without touching the read set."""
        # Read-your-writes: wait for completion of asynchronous writes.
        await self._wait_for_background_writes()
        self._check_async_error()

        ids = list(page_ids)
        request = encode_frames(
            {
                "page_index": page_index,
                "version": self._version,
                "hash": self._page_buffer.get(page_index),
                "accept_zstd": True,
            }
            for page_index in ids
        )
        url = _endpoint(self._base(), "/batch/read")
        backoff = RandomizedExponentialBackoff()
        while True:
            response = await self.client._send("POST", url, content=request)
            if response is None:
                await backoff.wait()
                continue

            pages: list[bytes] = []
            for message in iter_frames(response[1]):
                data = bytes(message["data"])
                pages.append(_decompress(data) if message.get("zstd", False) else data)
                self._seen_hashes.add(blake3_digest(data))

            if len(pages) != len(ids):
                _log.error("response length mismatch, retrying")
                await backoff.wait()
                continue
            return pages

    async def _background_write(self, request: bytes, num_pages: int) -> None:
        try:
            if self._async_error:
                return
            url = _endpoint(self._base(), "/batch/write")
            backoff = RandomizedExponentialBackoff()
            while True:
                try:
                    response = await self.client._send("POST", url, content=request)
                except StatusCodeError as exc:
                    _log.error("background page write failed: %s", exc)
                    self._async_error = True
                    return
                if response is None:
                    await backoff.wait()
                    continue

                counter = 0
                try:
                    for message in iter_frames(response[1]):
                        if not message["hash"]:
                            if counter != num_pages:
                                _log.error(
                                    "background page write acknowledged %d of %d pages",
                                    counter,
                                    num_pages,
                                )
                                self._async_error = True
                            return
                        counter += 1
                except (WireError, KeyError, TypeError) as exc:
                    _log.error("background page write could not decode server response: %s", exc)
                    self._async_error = True
                    return
                _log.error("incomplete write, retrying")
                await backoff.wait()
        finally:
            self._background_slots.release()

    async def write_many(self, pages: Iterable[tuple[int, bytes]]) -> None:
        """Buffer page writes and upload their contents in the background."""
        hashed = [(page_index, bytes(data), blake3_digest(data)) for page_index, data in pages]
        to_push = [
            (page_index, data)
            for page_index, data, digest in hashed
            if digest not in self._seen_hashes
        ]
        request = (
            encode_frames({"data": data, "delta_base": page_index} for page_index, data in to_push)
            + FINAL_FRAME
        )
        for page_index, _, digest in hashed:
            self._page_buffer[page_index] = digest
            self._seen_hashes.add(digest)

        await self._background_slots.acquire()
        task = asyncio.create_task(self._background_write(request, len(to_push)))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def commit_intent(
        self, metadata: str | None, fast_writes: Mapping[int, bytes]
    ) -> NamespaceCommitIntent | None:
        """Describe what committing this transaction would change; ``None`` if nothing."""
        # Wait for all pages in the page buffer to be flushed.
        await self._wait_for_background_writes()
        self._check_async_error()

        if not self._page_buffer and metadata is None and not fast_writes:
            return None

        config = self.client.config
        intent = NamespaceCommitIntent(
            init=CommitNamespaceInit(
                ns_key=config.ns_key,
                ns_key_hashproof=config.ns_key_hashproof,
                version=self._version,
                metadata=metadata,
                num_pages=len(self._page_buffer) + len(fast_writes),
                read_set=None if self._read_set is None else set(self._read_set),
            )
        )
        intent.requests.extend(
            CommitRequest(page_index, blake3_digest(data), bytes(data))
            for page_index, data in fast_writes.items()
        )
        intent.requests.extend(
            CommitRequest(page_index, digest)
            for page_index, digest in self._page_buffer.items()
            if page_index not in fast_writes
        )
        return intent

    async def commit(
        self, metadata: str | None = None, fast_writes: Mapping[int, bytes] | None = None
    ) -> CommitOutput:
        """Commit the transaction."""
        intent = await self.commit_intent(metadata, fast_writes or {})
        if intent is None:
            return CommitOutput(CommitStatus.EMPTY)
        result = await self.client.apply_commit_intents(self.dp, [intent])
        if result is None:
            return CommitOutput(CommitStatus.CONFLICT)
        return CommitOutput(CommitStatus.COMMITTED, result)