import hashlib

import pytest

from anytls.padding import (
    CHECK_MARK,
    DEFAULT_PADDING_SCHEME,
    PaddingFactory,
    PaddingHolder,
    update_padding_scheme,
)


@pytest.fixture
def factory():
    return PaddingFactory(DEFAULT_PADDING_SCHEME)


def test_default_stop(factory):
    assert factory.stop == 8


def test_fixed_first_packet(factory):
    assert factory.generate_record_payload_sizes(0) == [30]


def test_check_marks_and_ranges(factory):
    sizes = factory.generate_record_payload_sizes(2)
    assert sizes.count(CHECK_MARK) == 4
    assert 400 <= sizes[0] < 500
    assert all(500 <= s < 1000 for s in sizes[2::2])


def test_mixed_fixed_and_range(factory):
    sizes = factory.generate_record_payload_sizes(3)
    assert sizes[0] == 9
    assert 500 <= sizes[1] < 1000


def test_unknown_packet_is_empty(factory):
    assert factory.generate_record_payload_sizes(100) == []


def test_reversed_and_invalid_ranges():
    f = PaddingFactory(b"stop=2\n0=50-20,0-5,x-3,c")
    sizes = f.generate_record_payload_sizes(0)
    assert len(sizes) == 2
    assert 20 <= sizes[0] < 50
    assert sizes[1] == CHECK_MARK


@pytest.mark.parametrize("raw", [b"", b"stop=abc\n0=1-2", b"0=1-2"])
def test_invalid_scheme_rejected(raw):
    with pytest.raises(ValueError):
        PaddingFactory(raw)


def test_update_scheme(factory):
    holder = PaddingHolder(factory)
    raw = b"stop=3\n0=10-10"
    assert update_padding_scheme(raw, holder) is True
    assert holder.load().md5 == hashlib.md5(raw).hexdigest()
    assert holder.load().stop == 3


def test_update_rejects_bad_scheme(factory):
    holder = PaddingHolder(factory)
    assert update_padding_scheme(b"nothing", holder) is False
    assert holder.load() is factory