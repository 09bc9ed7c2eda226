import pytest

import utils
from utils import RetryHelper, format_duration, normalize_entity_ids


def test_fixed_delay_retry_never_gives_up_by_default():
    helper = RetryHelper(base_delay=5.0)

    assert helper.should_retry(0)
    assert helper.should_retry(10_000)
    assert helper.calculate_delay(0) == 5.0
    assert helper.calculate_delay(7) == 5.0


def test_bounded_exponential_retry():
    helper = RetryHelper(max_retries=3, base_delay=1.0, max_delay=4.0, exponential=True)

    assert [helper.calculate_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 4.0]
    assert helper.should_retry(2)
    assert not helper.should_retry(3)


@pytest.mark.asyncio
async def test_sleep_for_attempt_uses_calculated_delay(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(utils, "sleep", fake_sleep)
    await RetryHelper(base_delay=2.5).sleep_for_attempt(3)

    assert delays == [2.5]


def test_format_duration():
    assert format_duration(750) == "12m 30s"
    assert format_duration(3600) == "1h"
    assert format_duration(-1) == "0s"


def test_normalize_entity_ids():
    assert normalize_entity_ids(["a", {"id": "b"}, {"name": "x"}, " ", None, 7]) == {"a", "b", "7"}
    assert normalize_entity_ids(None) == set()
