import pytest

from mvpages.template import first_page_template
from mvpages.types import LockKind
from mvpages.vfs import DatabaseName, MultiVersionVfs, parse_database_name


class _FakeHttp:
    async def request(self, *args, **kwargs):
        raise AssertionError("no network in tests")


def test_parse_plain_name():
    assert parse_database_name("mydb") == DatabaseName(ns_key="mydb")


def test_parse_leading_slashes_stripped():
    assert parse_database_name("///mydb").ns_key == "mydb"


def test_parse_fixed_version():
    name = parse_database_name("mydb@0000abcd")
    assert name.ns_key == "mydb"
    assert name.fixed_version == "0000abcd"


def test_parse_empty_version_is_none():
    name = parse_database_name("mydb@")
    assert name.fixed_version is None
    assert name.ns_key == "mydb"


def test_parse_hashproof():
    name = parse_database_name("ns:abc.proof@v1")
    assert name.ns_key == "ns:abc"
    assert name.ns_key_hashproof == "proof"
    assert name.fixed_version == "v1"


def test_parse_colon_without_dot_kept_whole():
    name = parse_database_name("ns:abc")
    assert name.ns_key == "ns:abc"
    assert name.ns_key_hashproof is None


def test_parse_url_name():
    name = parse_database_name("http://Example.com:7000/mydb@v2")
    assert name.dp == "http://example.com:7000"
    assert name.ns_key == "mydb"
    assert name.fixed_version == "v2"


def test_parse_url_default_port_dropped():
    name = parse_database_name("https://example.com:443/db")
    assert name.dp == "https://example.com"
    assert name.ns_key == "db"


def test_parse_url_without_host_rejected():
    with pytest.raises(ValueError):
        parse_database_name("http:///db")


def test_open_builds_connection():
    vfs = MultiVersionVfs(
        data_plane="http://localhost:7000,http://localhost:7001",
        sector_size=4096,
        http_client=_FakeHttp(),
        lock_owner="owner",
    )
    conn = vfs.open("ns:abc.proof@v1")
    config = conn.client.config
    assert config.data_plane == ["http://localhost:7000", "http://localhost:7001"]
    assert config.ns_key == "ns:abc"
    assert config.ns_key_hashproof == "proof"
    assert config.lock_owner == "owner"
    assert conn.fixed_version == "v1"
    assert conn.dp is None
    assert conn.sector_size == 4096
    assert conn.first_page == first_page_template(4096)
    assert conn.current_lock() is LockKind.NONE


def test_open_uses_name_map():
    vfs = MultiVersionVfs(
        data_plane="http://localhost:7000",
        http_client=_FakeHttp(),
        db_name_map={"alias": "real@v9"},
    )
    conn = vfs.open("alias", True)
    assert conn.client.config.ns_key == "real"
    assert conn.fixed_version == "v9"


def test_open_without_mapping_ignores_map():
    vfs = MultiVersionVfs(
        data_plane="http://localhost:7000",
        http_client=_FakeHttp(),
        db_name_map={"alias": "real"},
    )
    assert vfs.open("alias", False).client.config.ns_key == "alias"


def test_open_calls_client_factory_each_time():
    made = []

    def factory():
        client = _FakeHttp()
        made.append(client)
        return client

    vfs = MultiVersionVfs(data_plane="http://localhost:7000", http_client=factory)
    first = vfs.open("a")
    second = vfs.open("b")
    assert len(made) == 2
    assert first.client.http is made[0]
    assert second.client.http is made[1]


def test_open_prebuilt_client_shared():
    http = _FakeHttp()
    vfs = MultiVersionVfs(data_plane="http://localhost:7000", http_client=http)
    assert vfs.open("a").client.http is http
    assert vfs.open("b").client.http is http


def test_open_url_sets_data_plane_override():
    vfs = MultiVersionVfs(data_plane="http://localhost:7000", http_client=_FakeHttp())
    conn = vfs.open("http://localhost:9000/db")
    assert conn.dp == "http://localhost:9000"
    assert conn.client.config.ns_key == "db"


def test_open_bad_data_plane():
    vfs = MultiVersionVfs(data_plane="http://localhost:7000,not-a-url", http_client=_FakeHttp())
    with pytest.raises(ValueError, match="not-a-url"):
        vfs.open("db")


def test_open_unsupported_sector_size():
    vfs = MultiVersionVfs(data_plane="http://localhost:7000", sector_size=1000, http_client=_FakeHttp())
    with pytest.raises(ValueError):
        vfs.open("db")