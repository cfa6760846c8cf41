# mvpages

`mvpages` is an asyncio library that talks to a multi-version, page-addressed
database store over HTTP. A database is a namespace of fixed-size pages. Every
read sees one snapshot version. Every commit either lands as a new version or
is reported as a conflict.

## Modules

- **`mvpages.client`**: the HTTP client, built on `httpx`.
  - `MultiVersionClient(config, http=None)` takes a `ClientConfig`, which holds
    the data plane addresses, the namespace key, an optional hash proof and an
    optional lock owner.
  - It starts transactions with `create_transaction`,
    `create_transaction_with_info` and `create_transaction_at_version`.
  - It commits with `apply_commit_intents`, which returns a `CommitResult`, or
    `None` on a conflict.
  - `time2version` maps a timestamp to a `TimeToVersionResponse`.
  - A `Transaction` reads pages in batches with `read_many_nomark`. It uploads
    pages in the background with `write_many`, and can track a read set.
    `commit_intent` builds a `NamespaceCommitIntent`. `commit` returns a
    `CommitOutput` whose `status` is a `CommitStatus`: `COMMITTED`,
    `CONFLICT` or `EMPTY`.
- **`mvpages.connection`**: `Connection` presents one namespace as an
  SQLite-style database file. It maps file offsets to pages and keeps an LRU
  page cache and a write buffer. It prefetches the pages it predicts will be
  read next, and it turns lock transitions (`LockKind`) into transactions.
- **`mvpages.vfs`**: `MultiVersionVfs` opens connections by name.
  `parse_database_name` splits a name of the form
  `[http(s)://host]/ns_key[:prefix.hashproof][@version]` into a `DatabaseName`.
- **`mvpages.fusefs`**: `FuseFs` is an in-memory model of a filesystem that
  exposes configured namespaces as symlinks, `ns<index>-<n>.db` files and
  in-memory `.db-journal` files. It provides `lookup`, `forget`, `open`,
  `setlk`, `read`, `write`, `flush`, `getattr`, `unlink` and `readlink`, and
  reports failures as `OSError` with an `errno` code. `parse_namespaces` reads
  a `file1=ns1,file2=ns2` mapping.
- **Helpers**:
  - `mvpages.backoff.RandomizedExponentialBackoff`: retry delays.
  - `mvpages.wire`: length-prefixed MessagePack frames.
  - `mvpages.hashing.blake3_digest`: a pure-Python BLAKE3 hash.
  - `mvpages.history.TransitionHistory`: stride-based read prediction.
  - `mvpages.template.first_page_template`: page 1 of an empty database for
    sector sizes 4096, 8192, 16384 and 32768.
  - `mvpages.types.LockKind`: lock levels.

## Installation

The package needs Python 3.10 or later. It depends on `httpx`, `msgpack`,
`zstandard` and `cachetools`. Install the `test` extra to run the tests.

## Opening a database

```python
import asyncio

from mvpages.types import LockKind
from mvpages.vfs import MultiVersionVfs


async def main():
    vfs = MultiVersionVfs(data_plane="http://localhost:7000", sector_size=8192)
    conn = vfs.open("mydb", False)

    await conn.lock(LockKind.SHARED)           # starts a transaction
    header = await conn.read_exact_at(100, 0)  # the first 100 bytes of page 1
    size = await conn.size()                   # bytes in the database file
    await conn.unlock(LockKind.NONE)           # ends the transaction


asyncio.run(main())
```

`data_plane` may list several addresses separated by commas. Each request goes
to one of them, chosen at random, unless the database name carries its own
origin.

## Writing

1. Take the lock to `LockKind.RESERVED` or higher.
2. Write whole pages with `write_all_at(data, offset)`. Page 1 must keep the
   connection's page size and must not switch to WAL mode.
3. Call `confirm_commit()`.
4. Drop the lock below reserved. The commit happens at this point.

`unlock` returns `False` when the commit hit a conflict. The writes are thrown
away if `confirm_commit()` was not called, or if the connection is pinned to a
version.

## Reading an older version

A name ending in `@version` opens a snapshot, and its transactions are
read-only. On a connection with no active transaction, `pin_version` and
`unpin_version` switch between a snapshot and the latest version.
`time2version` finds the versions just before and just after a timestamp.

## Retries and errors

Network errors and 5xx responses are retried with
`RandomizedExponentialBackoff`. The delay starts at 50 ms and grows by half on
each retry, up to 10 s, with up to ±20 % jitter.

Other non-success responses raise `StatusCodeError`. On commit, a 409 is
reported as a conflict, and any other such status raises `CommitError`.

When `Connection.lock` cannot start a transaction, it returns `False`. If the
server answered 410, it raises `OSError` instead.

## Tuning

`mvpages.connection.SETTINGS` is a `Settings` instance with three fields:

- `page_cache_size`: the default cache size for new connections.
- `write_chunk_size`: the number of pages sent in each background write.
- `prefetch_depth`: the minimum number of pages to prefetch.

## What the package does not do

`FuseFs` holds the bookkeeping and file operations only. The package does not
mount a filesystem and has no command-line program, so it cannot be used
directly as a FUSE mount. It also includes no server for the page store.