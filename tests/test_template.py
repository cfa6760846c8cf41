import pytest

from mvpages.template import SUPPORTED_SECTOR_SIZES, first_page_template


@pytest.mark.parametrize("size", SUPPORTED_SECTOR_SIZES)
def test_template_matches_sector_size(size):
    page = first_page_template(size)
    assert len(page) == size
    assert int.from_bytes(page[16:18], "big") == size


@pytest.mark.parametrize("size", SUPPORTED_SECTOR_SIZES)
def test_template_header(size):
    page = first_page_template(size)
    assert page[:16] == b"SQLite format 3\x00"
    assert int.from_bytes(page[28:32], "big") == 1
    assert page[18] == 1 and page[19] == 1
    assert page[100] == 0x0D


@pytest.mark.parametrize("size", [0, 512, 1000, 65536])
def test_unsupported_size_rejected(size):
    with pytest.raises(ValueError):
        first_page_template(size)


def test_template_is_stable():
    pages = [bytes(first_page_template(8192)) for _ in range(3)]
    assert len(set(pages)) == 1
    assert len(pages[0]) == 8192
    assert pages[0][:16] == b"SQLite format 3\x00"