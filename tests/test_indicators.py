"""Tests for the streaming indicator calculators.

Pytest function tests: RSI trace against hand-computed Wilder values, plus the
bounds and fixed points each calculator must respect.
"""

import math

import pytest

from indicators import (
	FLAT_RANGE_K,
	BollingerBandsCalculator,
	Downtrend,
	EMACalculator,
	IndicatorEngine,
	MACDCalculator,
	ParabolicSARCalculator,
	PriceBar,
	RSICalculator,
	RollingWindow,
	SMACalculator,
	StochasticCalculator,
	StochasticRSICalculator,
	Uptrend,
)


def test_rolling_window_keeps_only_latest_values():
	window = RollingWindow(3)
	for v in [5.0, 1.0, 9.0, 2.0, 4.0]:
		window.add(v)
	assert len(window) == 3
	assert window.values() == [9.0, 2.0, 4.0]
	assert window.get_max() == 9.0
	assert window.get_min() == 2.0
	assert window.get_average() == pytest.approx(5.0)


def test_rolling_window_full_after_capacity():
	window = RollingWindow(4)
	for i in range(3):
		window.add(float(i))
		assert not window.is_full()
	window.add(3.0)
	assert window.is_full()
	for i in range(100):
		window.add(float(i))
	assert window.is_full()
	assert len(window) == 4
	assert window.get_min() == 96.0


def test_rolling_window_empty_returns_none():
	window = RollingWindow(2)
	assert window.get_max() is None
	assert window.get_min() is None
	assert window.get_average() is None


def test_rsi_trace_matches_hand_computed_wilder_values():
	rsi = RSICalculator(period=3)
	prices = [10, 11, 9, 8, 12, 15, 7, 6, 20]
	out = [rsi.calculate(p) for p in prices]

	assert out[:3] == [None, None, None]
	# seed: gains [1,0,0] -> 1/3, losses [0,2,1] -> 1
	expected = [25.0, 70.0, 5500 / 67, 220 / 7, 2000 / 71, 192100 / 2482]
	for got, want in zip(out[3:], expected):
		assert math.isclose(got, want, rel_tol=1e-9)


def test_rsi_first_period_calls_return_none():
	period = 14
	rsi = RSICalculator(period)
	out = [rsi.calculate(float(p)) for p in range(1, period + 2)]
	assert all(v is None for v in out[:period])
	assert out[period] is not None


def test_rsi_rising_trend_is_100_and_bounded():
	rsi = RSICalculator(period=14)
	values = [rsi.calculate(float(i)) for i in range(1, 60)]
	ready = [v for v in values if v is not None]
	assert ready
	assert all(0.0 <= v <= 100.0 for v in ready)
	assert ready[-1] == 100.0


def test_rsi_falling_trend_is_zero():
	rsi = RSICalculator(period=5)
	values = [rsi.calculate(float(100 - i)) for i in range(20)]
	assert values[-1] == pytest.approx(0.0)


def test_ema_constant_price_is_fixed_point():
	ema = EMACalculator(10)
	for _ in range(30):
		assert math.isclose(ema.calculate(42.0), 42.0)
	assert math.isclose(ema.get_value(), 42.0)


def test_ema_seeds_with_first_price_and_smooths():
	ema = EMACalculator(3)  # multiplier 0.5
	assert ema.get_value() is None
	assert ema.calculate(10.0) == 10.0
	assert ema.calculate(20.0) == pytest.approx(15.0)
	assert ema.get_value() == pytest.approx(15.0)
	# get_value must not mutate
	assert ema.get_value() == pytest.approx(15.0)


def test_sma_none_until_window_full():
	sma = SMACalculator(3)
	assert sma.calculate(1.0) is None
	assert sma.calculate(2.0) is None
	assert sma.calculate(3.0) == pytest.approx(2.0)
	assert sma.calculate(4.0) == pytest.approx(3.0)


def test_macd_constant_price_is_zero():
	macd = MACDCalculator()
	for _ in range(40):
		result = macd.calculate(50.0)
	assert result.macd == pytest.approx(0.0, abs=1e-9)
	assert result.signal_line == pytest.approx(0.0, abs=1e-9)
	assert result.histogram == pytest.approx(0.0, abs=1e-9)
	assert (result.fast, result.slow, result.signal) == (12, 26, 9)


def test_bollinger_bands():
	bb = BollingerBandsCalculator(period=4, multiplier=2.0)
	for p in [1.0, 2.0, 3.0]:
		assert bb.calculate(p).upper is None
	result = bb.calculate(4.0)
	sigma = math.sqrt(1.25)
	assert result.middle == pytest.approx(2.5)
	assert result.upper == pytest.approx(2.5 + 2 * sigma)
	assert result.lower == pytest.approx(2.5 - 2 * sigma)


def test_psar_first_bar_seeds_at_low():
	psar = ParabolicSARCalculator(step=0.02, max_step=0.2)
	result = psar.calculate(high=11.0, low=10.0)
	assert result.value == 10.0
	assert (result.step, result.max_step) == (0.02, 0.2)
	assert psar.trend == Uptrend(ep=11.0)
	assert psar.af == 0.02


def test_psar_uptrend_stays_below_prior_lows():
	psar = ParabolicSARCalculator()
	prev_low = None
	for i in range(30):
		high, low = 11.0 + i, 10.0 + i
		value = psar.calculate(high, low).value
		if prev_low is not None:
			assert value <= min(prev_low, low)
		prev_low = low
	assert isinstance(psar.trend, Uptrend)
	# AF capped at max_step
	assert psar.af == pytest.approx(0.2)


def test_psar_downtrend_stays_above_prior_highs():
	psar = ParabolicSARCalculator(step=0.02, max_step=0.2)
	psar.calculate(20.0, 19.0)
	result = psar.calculate(19.99, 5.0)
	assert result.value == 20.0
	assert psar.trend == Downtrend(ep=5.0)

	# raw 20 + 0.02 * (5 - 20) = 19.7 is pulled up to the previous high
	result = psar.calculate(6.0, 4.0)
	assert result.value == 19.99
	assert psar.trend == Downtrend(ep=4.0)
	assert psar.af == pytest.approx(0.04)

	prev_high = 6.0
	for k in range(1, 25):
		high, low = 6.0 - 0.1 * k, 4.0 - 0.1 * k
		value = psar.calculate(high, low).value
		assert value >= max(prev_high, high)
		assert isinstance(psar.trend, Downtrend)
		prev_high = high


def test_psar_reversal_resets_af_and_swaps_trend():
	psar = ParabolicSARCalculator(step=0.02, max_step=0.2)
	psar.calculate(11.0, 10.0)
	psar.calculate(12.0, 11.0)
	assert psar.af == pytest.approx(0.04)

	result = psar.calculate(11.5, 5.0)
	# previous EP becomes the SAR
	assert result.value == 12.0
	assert psar.trend == Downtrend(ep=5.0)
	assert psar.af == 0.02

	result = psar.calculate(6.0, 4.0)
	assert result.value == pytest.approx(12.0 + 0.02 * (5.0 - 12.0))
	assert psar.trend == Downtrend(ep=4.0)
	assert psar.af == pytest.approx(0.04)


def test_psar_rejects_bad_steps():
	with pytest.raises(ValueError):
		ParabolicSARCalculator(step=0.3, max_step=0.2)


def test_stochastic_none_until_full_then_bounded():
	stoch = StochasticCalculator(k_period=5, d_period=3)
	bars = [(10 + (i % 4), 8 + (i % 3) * 0.5, 9 + (i % 5) * 0.3) for i in range(40)]
	for i, (high, low, close) in enumerate(bars):
		close = min(max(close, low), high)
		result = stoch.calculate(high, low, close)
		if i < 4:
			assert result.k is None and result.d is None
		else:
			assert 0.0 <= result.k <= 100.0
			assert 0.0 <= result.d <= 100.0


def test_stochastic_k_and_d_values():
	stoch = StochasticCalculator(k_period=2, d_period=2)
	stoch.calculate(10.0, 0.0, 5.0)
	first = stoch.calculate(10.0, 0.0, 10.0)
	assert first.k == pytest.approx(100.0)
	assert first.d == pytest.approx(100.0)
	second = stoch.calculate(10.0, 0.0, 0.0)
	assert second.k == pytest.approx(0.0)
	assert second.d == pytest.approx(50.0)
	assert second.as_dict() == {"%K": second.k, "%D": second.d}


def test_stochastic_flat_range_reports_midpoint():
	stoch = StochasticCalculator(k_period=3, d_period=3)
	for _ in range(5):
		result = stoch.calculate(10.0, 10.0, 10.0)
	assert result.k == FLAT_RANGE_K
	assert result.d == FLAT_RANGE_K


def test_stochastic_rsi_waits_for_rsi_and_window():
	calc = StochasticRSICalculator(rsi_period=3, stoch_period=3, d_period=2)
	prices = [10, 11, 9, 8, 12, 15, 7, 6, 20]
	out = [calc.calculate(float(p)) for p in prices]
	# RSI ready on call 4, window of 3 RSI values full on call 6
	assert all(r.k is None for r in out[:5])
	# RSI values 25, 70, 82.09 -> newest is the max
	assert out[5].k == pytest.approx(100.0)
	assert out[5].d == pytest.approx(100.0)
	# window 70, 82.09, 31.43 -> newest is the min
	assert out[6].k == pytest.approx(0.0)
	assert out[6].d == pytest.approx(50.0)


def test_stochastic_rsi_flat_rsi_reports_midpoint():
	calc = StochasticRSICalculator(rsi_period=3, stoch_period=3, d_period=3)
	for i in range(20):
		result = calc.calculate(float(i))
	assert result.k == FLAT_RANGE_K


def test_engine_snapshot_fills_in_after_warmup():
	engine = IndicatorEngine(sma_short_period=3, sma_long_period=5, bb_period=5, stoch_k_period=3)
	first = engine.update(PriceBar(open=10, high=11, low=9, close=10, timestamp=1.0))
	assert first.sma20 is None
	assert first.rsi is None
	assert first.ema20 == 10
	assert first.psar == 9

	snapshot = None
	for i in range(60):
		c = 10.0 + (i % 7) - 3
		snapshot = engine.update(PriceBar(open=c, high=c + 1, low=c - 1, close=c, timestamp=2.0 + i))
	assert engine.bars_processed == 61
	assert snapshot.sma20 is not None and snapshot.sma50 is not None
	assert snapshot.bb_upper >= snapshot.bb_middle >= snapshot.bb_lower
	assert snapshot.stoch_rsi_k is not None

	record = snapshot.to_record(c)
	assert record["close"] == c
	assert record["rsi14"] == snapshot.rsi
	assert record["macdLine"] == snapshot.macd
	assert record["macdHist"] == snapshot.macd_hist
	assert record["ema50"] == snapshot.ema50
