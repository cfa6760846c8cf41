from unittest import mock

import pytest

from mvpages.backoff import (
    DEFAULT_MAX_DELAY,
    DEFAULT_MIN_DELAY,
    RandomizedExponentialBackoff,
)


def test_default_first_delay_is_within_jitter_of_min_delay():
    boff = RandomizedExponentialBackoff()
    first = boff.next_delay()
    assert DEFAULT_MIN_DELAY * 0.8 - 1e-9 <= first <= DEFAULT_MIN_DELAY * 1.2 + 1e-9


def test_zero_factor_first_delay_equals_min_delay():
    boff = RandomizedExponentialBackoff(0.05, 10.0, 0.0)
    assert boff.next_delay() == pytest.approx(0.05)


def test_zero_factor_delays_are_nondecreasing_and_capped():
    boff = RandomizedExponentialBackoff(0.05, 2.0, 0.0)
    delays = [boff.next_delay() for _ in range(30)]
    assert delays == sorted(delays)
    assert max(delays) == pytest.approx(2.0)
    assert delays[-1] == pytest.approx(2.0)


def test_growth_is_by_half():
    boff = RandomizedExponentialBackoff(1.0, 100.0, 0.0)
    first = boff.next_delay()
    second = boff.next_delay()
    assert second == pytest.approx(first * 1.5)


def test_default_eventually_reaches_max():
    boff = RandomizedExponentialBackoff(random_factor=0.0)
    for _ in range(50):
        boff.next_delay()
    assert boff.current_delay == pytest.approx(DEFAULT_MAX_DELAY)


def test_jitter_stays_within_bounds():
    for _ in range(200):
        boff = RandomizedExponentialBackoff(1.0, 10.0, 0.2)
        delay = boff.next_delay()
        assert 0.8 - 1e-9 <= delay <= 1.2 + 1e-9


def test_invalid_random_factor_raises():
    with pytest.raises(ValueError):
        RandomizedExponentialBackoff(0.05, 10.0, 1.5)


def test_negative_delay_raises():
    with pytest.raises(ValueError):
        RandomizedExponentialBackoff(-1.0, 10.0, 0.1)


@pytest.mark.asyncio
async def test_wait_sleeps_for_next_delay():
    boff = RandomizedExponentialBackoff(0.05, 10.0, 0.0)
    with mock.patch("asyncio.sleep", new=mock.AsyncMock()) as sleep:
        await boff.wait()
        await boff.wait()
    slept = [call.args[0] for call in sleep.await_args_list]
    assert slept == [pytest.approx(0.05), pytest.approx(0.075)]
    assert boff.current_delay == pytest.approx(0.1125)