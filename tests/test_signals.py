import pytest

from ema_trader.models import EmaResult, SignalType
from ema_trader.signals import SignalDetector


def make_emas(fast, mid, slow):
    return {
        5: EmaResult(period=5, value=fast[-1], values=list(fast)),
        8: EmaResult(period=8, value=mid[-1], values=list(mid)),
        22: EmaResult(period=22, value=slow[-1], values=list(slow)),
    }


def test_trend_alignment():
    assert SignalDetector.is_uptrend(3, 2, 1)
    assert not SignalDetector.is_uptrend(3, 1, 2)
    assert SignalDetector.is_downtrend(1, 2, 3)
    assert not SignalDetector.is_downtrend(2, 2, 3)


def test_buy_after_three_confirmed_bars():
    emas = make_emas([9, 11, 12, 13], [10, 10, 10, 10], [5])
    assert SignalDetector(confirmation_bars=3).evaluate(emas) == SignalType.BUY


def test_single_bar_crossover_is_not_confirmed():
    emas = make_emas([9, 9, 9, 11], [10, 10, 10, 10], [5])
    assert SignalDetector(confirmation_bars=3).evaluate(emas) == SignalType.NONE


@pytest.mark.parametrize("n, fast", [
    (1, [9, 11]),
    (2, [9, 11, 12]),
    (3, [9, 11, 12, 13]),
])
def test_buy_with_exact_confirmation_window(n, fast):
    emas = make_emas(fast, [10] * len(fast), [5])
    assert SignalDetector(confirmation_bars=n).evaluate(emas) == SignalType.BUY


@pytest.mark.parametrize("n, fast", [
    (1, [11, 11]),
    (2, [9, 9, 11]),
    (2, [11, 11, 11]),
    (3, [9, 11, 12, 9]),
])
def test_no_buy_without_fresh_confirmed_crossover(n, fast):
    emas = make_emas(fast, [10] * len(fast), [5])
    assert SignalDetector(confirmation_bars=n).evaluate(emas) == SignalType.NONE


def test_exactly_n_bars_of_history_uses_window_only():
    emas = make_emas([11, 12, 13], [10, 10, 10], [5])
    assert SignalDetector(confirmation_bars=3).evaluate(emas) == SignalType.BUY


def test_too_little_history_is_none():
    emas = make_emas([12, 13], [10, 10], [5])
    assert SignalDetector(confirmation_bars=3).evaluate(emas) == SignalType.NONE


def test_sell_is_mirror():
    emas = make_emas([11, 9, 8, 7], [10, 10, 10, 10], [15])
    assert SignalDetector(confirmation_bars=3).evaluate(emas) == SignalType.SELL


def test_crossover_without_trend_alignment_is_none():
    # EMA8 below EMA22: not an uptrend
    emas = make_emas([9, 11, 12, 13], [10, 10, 10, 10], [20])
    assert SignalDetector(confirmation_bars=3).evaluate(emas) == SignalType.NONE


def test_zero_confirmation_uses_latest_bar():
    detector = SignalDetector(confirmation_bars=0)
    assert detector.evaluate(make_emas([11, 12], [10, 10], [5])) == SignalType.BUY
    assert detector.evaluate(make_emas([9, 8], [10, 10], [15])) == SignalType.SELL


def test_missing_periods_is_none():
    emas = make_emas([9, 11], [10, 10], [5])
    del emas[22]
    assert SignalDetector(confirmation_bars=1).evaluate(emas) == SignalType.NONE


def test_negative_confirmation_rejected():
    with pytest.raises(ValueError):
        SignalDetector(confirmation_bars=-1)


def test_latest_values():
    emas = make_emas([9, 11], [10, 10], [5])
    assert SignalDetector().latest_values(emas) == {'ema5': 11, 'ema8': 10, 'ema22': 5}
