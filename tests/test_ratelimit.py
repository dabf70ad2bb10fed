import pytest

from echo_gateway.ratelimit import FixedWindowLimiter, parse_rate_limit


@pytest.mark.parametrize(
    "spec,expected",
    [("100/15m", (100, 900.0)), ("30/m", (30, 60.0)), ("10/s", (10, 1.0)), ("5 / 2h", (5, 7200.0))],
)
def test_parse_rate_limit(spec, expected):
    assert parse_rate_limit(spec) == expected


@pytest.mark.parametrize("spec", ["", "fast", "0/m", "10/fortnight"])
def test_parse_rate_limit_rejects_garbage(spec):
    with pytest.raises(ValueError):
        parse_rate_limit(spec)


def test_fixed_window_blocks_then_resets():
    t = [0.0]
    limiter = FixedWindowLimiter(2, 60.0, clock=lambda: t[0])
    assert limiter.allow("a") == (True, 0)
    assert limiter.allow("a") == (True, 0)

    t[0] = 15.0
    allowed, retry_after = limiter.allow("a")
    assert allowed is False
    assert retry_after == 45

    # Keys are independent.
    assert limiter.allow("b")[0] is True

    t[0] = 60.0
    assert limiter.allow("a") == (True, 0)


def test_key_table_is_bounded():
    t = [0.0]
    limiter = FixedWindowLimiter(1, 10.0, max_keys=2, clock=lambda: t[0])
    assert limiter.allow("a")[0]
    assert limiter.allow("b")[0]
    assert limiter.allow("c")[0] is False

    # Expired windows are pruned to make room.
    t[0] = 11.0
    assert limiter.allow("c")[0] is True
