"""Opening database connections by name against the page store."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union
from urllib.parse import urlsplit

from .client import ClientConfig, MultiVersionClient
from .connection import Connection
from .template import SUPPORTED_SECTOR_SIZES

_DEFAULT_PORTS = {"http": 80, "https": 443}

HttpClientSource = Union[Any, Callable[[], Any], None]


@dataclass(frozen=True)
class DatabaseName:
    """The parts of a database name: ``[origin/]ns_key[:id.hashproof][@version]``."""

    ns_key: str
    ns_key_hashproof: str | None = None
    fixed_version: str | None = None
    dp: str | None = None


def _origin(url: str) -> tuple[str, str]:
    """Split an absolute URL into its origin and its path."""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError as exc:
        raise ValueError(f"invalid database url: {url}") from exc
    if not hostname:
        raise ValueError(f"invalid database url: {url}")
    host = f"[{hostname}]" if ":" in hostname else hostname
    scheme = parts.scheme.lower()
    origin = f"{scheme}://{host}"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        origin += f":{port}"
    return origin, parts.path or "/"


def parse_database_name(db: str) -> DatabaseName:
    """Split a database name into data plane, namespace key, hash proof and pinned version."""
    dp: str | None = None
    if db.startswith(("http://", "https://")):
        dp, db = _origin(db)
    db = db.lstrip("/")

    key_part, *rest = db.split("@")
    fixed_version = rest[0] if rest and rest[0] else None

    ns_key, hashproof = key_part, None
    colon_segs = key_part.split(":")
    if len(colon_segs) >= 2:
        dot_segs = colon_segs[1].split(".")
        if len(dot_segs) >= 2:
            ns_key = f"{colon_segs[0]}:{dot_segs[0]}"
            hashproof = dot_segs[1]

    return DatabaseName(
        ns_key=ns_key, ns_key_hashproof=hashproof, fixed_version=fixed_version, dp=dp
    )


def _parse_data_planes(spec: str) -> list[str]:
    addresses = []
    for address in spec.split(","):
        try:
            parts = urlsplit(address)
        except ValueError as exc:
            raise ValueError(f"failed to parse data plane address: {address}") from exc
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"failed to parse data plane address: {address}")
        addresses.append(address)
    return addresses


@dataclass
class MultiVersionVfs:
    """Opens connections to namespaces served by one or more data plane addresses."""

    data_plane: str
    sector_size: int = 8192
    http_client: HttpClientSource = None
    db_name_map: Mapping[str, str] = field(default_factory=dict)
    lock_owner: str | None = None

    def _http(self) -> Any:
        source = self.http_client
        if source is None:
            return None
        if callable(source) and not hasattr(source, "request"):
            return source()
        return source

    def open(self, db: str, map_name: bool = True) -> Connection:
        """Open a connection to the database named ``db``."""
        if map_name and db in self.db_name_map:
            return self.open(self.db_name_map[db], False)

        name = parse_database_name(db)
        if self.sector_size not in SUPPORTED_SECTOR_SIZES:
            raise ValueError(f"unsupported sector size: {self.sector_size}")

        config = ClientConfig(
            data_plane=_parse_data_planes(self.data_plane),
            ns_key=name.ns_key,
            ns_key_hashproof=name.ns_key_hashproof,
            lock_owner=self.lock_owner,
        )
        client = MultiVersionClient(config, self._http())
        return Connection(client, name.dp, name.fixed_version, self.sector_size)