from unittest.mock import MagicMock

import pytest

from marketplace.core.errors import GatewayError, GatewayUnavailable
from marketplace.gateways.retry import call_with_retry


def test_retries_until_success():
    func = MagicMock(side_effect=[GatewayUnavailable("timeout"), GatewayUnavailable("502"), "ok"])
    sleep = MagicMock()

    result = call_with_retry(func, "a", operation="fetch_payment", max_attempts=3, backoff_seconds=0.5, sleep=sleep, key="v")

    assert result == "ok"
    assert func.call_count == 3
    func.assert_called_with("a", key="v")
    delays = [c.args[0] for c in sleep.call_args_list]
    assert len(delays) == 2
    assert 0.5 <= delays[0] <= 1.0
    assert 1.0 <= delays[1] <= 1.5


def test_rejection_is_not_retried():
    func = MagicMock(side_effect=GatewayError("card declined"))
    sleep = MagicMock()

    with pytest.raises(GatewayError):
        call_with_retry(func, max_attempts=3, sleep=sleep)

    assert func.call_count == 1
    sleep.assert_not_called()


def test_gives_up_after_max_attempts():
    func = MagicMock(side_effect=GatewayUnavailable("down"))
    sleep = MagicMock()

    with pytest.raises(GatewayUnavailable):
        call_with_retry(func, max_attempts=4, backoff_seconds=0, sleep=sleep)

    assert func.call_count == 4
    assert sleep.call_count == 3
