"""Streaming trading indicators updated one price bar at a time.

Every calculator owns its running state and is fed bars in chronological order.
A calculator returns ``None`` (or a result with ``None`` fields) while it has not
seen enough history yet; once warmed up, each call costs at most O(window size).

Calculators are not thread-safe. Keep one set per symbol/timeframe stream; the
``IndicatorEngine`` at the bottom of this module bundles such a set.

Notes on initialization:
- EMA seeds with the first raw price instead of an SMA of the first ``period``
  prices. MACD inherits that, so it reports a value from the very first bar.
- Stochastic and Stochastic-RSI report ``FLAT_RANGE_K`` (the midpoint) when the
  high/low window has zero width.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Union
import math

# %K reported when highest == lowest over the look-back window.
FLAT_RANGE_K = 50.0


@dataclass(frozen=True)
class PriceBar:
    open: float
    high: float
    low: float
    close: float
    timestamp: float  # epoch seconds


class RollingWindow:
    """Fixed-capacity FIFO buffer of floats with max/min/average.

    The oldest value is evicted once more than ``size`` values were added.
    Average is O(1) via a running sum; max and min walk the buffer.
    """

    def __init__(self, size: int):
        if size <= 0:
            raise ValueError("size must be > 0")
        self.size = size
        self._data: Deque[float] = deque(maxlen=size)
        self._sum = 0.0

    def add(self, value: float) -> None:
        if len(self._data) == self.size:
            self._sum -= self._data[0]
        self._data.append(value)
        self._sum += value

    def is_full(self) -> bool:
        # The buffer never shrinks, so reaching capacity once means full forever.
        return len(self._data) == self.size

    def get_max(self) -> Optional[float]:
        return max(self._data) if self._data else None

    def get_min(self) -> Optional[float]:
        return min(self._data) if self._data else None

    def get_average(self) -> Optional[float]:
        if not self._data:
            return None
        return self._sum / len(self._data)

    def values(self) -> list:
        """Current contents, oldest first."""
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


def _check_period(name: str, period: int) -> None:
    if period <= 0:
        raise ValueError(f"{name} must be > 0")


class SMACalculator:
    """Simple Moving Average over the last ``period`` prices."""

    def __init__(self, period: int):
        _check_period("period", period)
        self.period = period
        self._window = RollingWindow(period)

    def calculate(self, price: float) -> Optional[float]:
        self._window.add(price)
        if not self._window.is_full():
            return None
        return self._window.get_average()


class RSICalculator:
    """Relative Strength Index using Wilder's smoothing.

    Phases:
    1) priming: the first price is only remembered, returns None
    2) seeding: collects ``period`` gain/loss samples, returns None until the
       buffer holds exactly ``period`` samples; the initial averages are the
       simple mean of those samples
    3) steady state: avg = (prev_avg * (period - 1) + sample) / period

    RSI is 100.0 when the average loss is zero (pure uptrend).
    """

    def __init__(self, period: int = 14):
        _check_period("period", period)
        self.period = period
        self.avg_gain: Optional[float] = None
        self.avg_loss: Optional[float] = None
        self._last_price: Optional[float] = None
        # Only needed for seeding; capped at ``period`` samples afterwards.
        self._changes: Deque[tuple] = deque(maxlen=period)

    def calculate(self, price: float) -> Optional[float]:
        if self._last_price is None:
            self._last_price = price
            return None

        change = price - self._last_price
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        self._last_price = price
        self._changes.append((gain, loss))

        if self.avg_gain is None:
            if len(self._changes) < self.period:
                return None
            self.avg_gain = sum(c[0] for c in self._changes) / self.period
            self.avg_loss = sum(c[1] for c in self._changes) / self.period
        else:
            self.avg_gain = (self.avg_gain * (self.period - 1) + gain) / self.period
            self.avg_loss = (self.avg_loss * (self.period - 1) + loss) / self.period

        if self.avg_loss == 0:
            return 100.0
        rs = self.avg_gain / self.avg_loss
        return 100.0 - 100.0 / (1.0 + rs)


class EMACalculator:
    """Exponential Moving Average seeded with the first raw price."""

    def __init__(self, period: int):
        _check_period("period", period)
        self.period = period
        self.multiplier = 2.0 / (period + 1)
        self._ema: Optional[float] = None

    def calculate(self, price: float) -> float:
        if self._ema is None:
            self._ema = price
        else:
            self._ema = price * self.multiplier + self._ema * (1.0 - self.multiplier)
        return self._ema

    def get_value(self) -> Optional[float]:
        """Last computed EMA without touching state."""
        return self._ema


@dataclass(frozen=True)
class MACDResult:
    macd: Optional[float]
    signal_line: Optional[float]
    histogram: Optional[float]
    fast: int
    slow: int
    signal: int


class MACDCalculator:
    def __init__(self, fast_period: int = 12, slow_period: int = 26, signal_period: int = 9):
        self.fast_period = fast_period
        self.slow_period = slow_period
        self.signal_period = signal_period
        self._fast = EMACalculator(fast_period)
        self._slow = EMACalculator(slow_period)
        self._signal = EMACalculator(signal_period)

    def calculate(self, price: float) -> MACDResult:
        macd = self._fast.calculate(price) - self._slow.calculate(price)
        signal_line = self._signal.calculate(macd)
        return MACDResult(
            macd=macd,
            signal_line=signal_line,
            histogram=macd - signal_line,
            fast=self.fast_period,
            slow=self.slow_period,
            signal=self.signal_period,
        )


@dataclass(frozen=True)
class BollingerResult:
    upper: Optional[float]
    middle: Optional[float]
    lower: Optional[float]
    period: int
    multiplier: float


class BollingerBandsCalculator:
    """SMA +/- ``multiplier`` population standard deviations."""

    def __init__(self, period: int = 20, multiplier: float = 2.0):
        _check_period("period", period)
        self.period = period
        self.multiplier = multiplier
        self._window = RollingWindow(period)

    def calculate(self, price: float) -> BollingerResult:
        self._window.add(price)
        if not self._window.is_full():
            return BollingerResult(None, None, None, self.period, self.multiplier)

        middle = self._window.get_average()
        variance = sum((p - middle) ** 2 for p in self._window.values()) / self.period
        width = self.multiplier * math.sqrt(variance)
        return BollingerResult(
            upper=middle + width,
            middle=middle,
            lower=middle - width,
            period=self.period,
            multiplier=self.multiplier,
        )


@dataclass(frozen=True)
class Uptrend:
    ep: float  # highest high of the trend


@dataclass(frozen=True)
class Downtrend:
    ep: float  # lowest low of the trend


Trend = Union[Uptrend, Downtrend]


@dataclass
class SarState:
    sar: float
    trend: Trend
    af: float
    prev_high: float
    prev_low: float


@dataclass(frozen=True)
class SarResult:
    value: float
    step: float
    max_step: float


class ParabolicSARCalculator:
    """Parabolic Stop-And-Reverse.

    The first bar seeds SAR at its low in an uptrend with EP at its high. Every
    later bar applies ``sar + af * (ep - sar)``, clamps it behind the previous and
    current bar, and reverses the trend when price touches the clamped SAR. On a
    reversal the old EP becomes the SAR and AF resets to ``step``; otherwise a new
    extreme moves EP and bumps AF by ``step`` up to ``max_step``.
    """

    def __init__(self, step: float = 0.02, max_step: float = 0.2):
        if step <= 0 or max_step < step:
            raise ValueError("Expect 0 < step <= max_step")
        self.step = step
        self.max_step = max_step
        self.state: Optional[SarState] = None

    @property
    def af(self) -> Optional[float]:
        return self.state.af if self.state else None

    @property
    def trend(self) -> Optional[Trend]:
        return self.state.trend if self.state else None

    def calculate(self, high: float, low: float) -> SarResult:
        s = self.state
        if s is None:
            self.state = SarState(sar=low, trend=Uptrend(ep=high), af=self.step, prev_high=high, prev_low=low)
            return SarResult(low, self.step, self.max_step)

        sar = s.sar + s.af * (s.trend.ep - s.sar)
        trend = s.trend
        af = s.af

        if isinstance(trend, Uptrend):
            sar = min(sar, s.prev_low, low)
            if low <= sar:
                sar, trend, af = trend.ep, Downtrend(ep=low), self.step
            elif high > trend.ep:
                trend = Uptrend(ep=high)
                af = min(af + self.step, self.max_step)
        else:
            sar = max(sar, s.prev_high, high)
            if high >= sar:
                sar, trend, af = trend.ep, Uptrend(ep=high), self.step
            elif low < trend.ep:
                trend = Downtrend(ep=low)
                af = min(af + self.step, self.max_step)

        s.sar, s.trend, s.af = sar, trend, af
        s.prev_high, s.prev_low = high, low
        return SarResult(sar, self.step, self.max_step)


@dataclass(frozen=True)
class StochasticResult:
    k: Optional[float]
    d: Optional[float]

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {"%K": self.k, "%D": self.d}


def _percent_k(value: float, lowest: float, highest: float) -> float:
    span = highest - lowest
    if span == 0:
        return FLAT_RANGE_K
    return (value - lowest) / span * 100.0


class StochasticCalculator:
    """%K over ``k_period`` highs/lows, %D as the mean of the last ``d_period`` %K."""

    def __init__(self, k_period: int = 14, d_period: int = 3):
        _check_period("k_period", k_period)
        _check_period("d_period", d_period)
        self.k_period = k_period
        self.d_period = d_period
        self._highs = RollingWindow(k_period)
        self._lows = RollingWindow(k_period)
        self._k_values = RollingWindow(d_period)

    def calculate(self, high: float, low: float, close: float) -> StochasticResult:
        self._highs.add(high)
        self._lows.add(low)
        if not self._highs.is_full():
            return StochasticResult(None, None)

        k = _percent_k(close, self._lows.get_min(), self._highs.get_max())
        self._k_values.add(k)
        return StochasticResult(k, self._k_values.get_average())


class StochasticRSICalculator:
    """Stochastic oscillator applied to RSI values instead of prices."""

    def __init__(self, rsi_period: int = 14, stoch_period: int = 14, d_period: int = 3):
        _check_period("stoch_period", stoch_period)
        _check_period("d_period", d_period)
        self.rsi_period = rsi_period
        self.stoch_period = stoch_period
        self.d_period = d_period
        self._rsi = RSICalculator(rsi_period)
        self._rsi_values = RollingWindow(stoch_period)
        self._k_values = RollingWindow(d_period)

    def calculate(self, price: float) -> StochasticResult:
        rsi = self._rsi.calculate(price)
        if rsi is None:
            return StochasticResult(None, None)

        self._rsi_values.add(rsi)
        if not self._rsi_values.is_full():
            return StochasticResult(None, None)

        k = _percent_k(rsi, self._rsi_values.get_min(), self._rsi_values.get_max())
        self._k_values.add(k)
        return StochasticResult(k, self._k_values.get_average())


@dataclass(frozen=True)
class IndicatorSnapshot:
    """All indicator outputs for one bar. ``None`` means not warmed up yet."""

    sma20: Optional[float] = None
    sma50: Optional[float] = None
    ema20: Optional[float] = None
    ema50: Optional[float] = None
    rsi: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_hist: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_d: Optional[float] = None
    stoch_rsi_k: Optional[float] = None
    stoch_rsi_d: Optional[float] = None
    psar: Optional[float] = None

    def to_record(self, close: float) -> Dict[str, Optional[float]]:
        """Project into the historical record shape read by the batch generator."""
        return {
            "close": close,
            "sma20": self.sma20,
            "sma50": self.sma50,
            "ema20": self.ema20,
            "ema50": self.ema50,
            "rsi14": self.rsi,
            "stochK": self.stoch_k,
            "stochD": self.stoch_d,
            "stochRsiK": self.stoch_rsi_k,
            "stochRsiD": self.stoch_rsi_d,
            "macdLine": self.macd,
            "macdSignal": self.macd_signal,
            "macdHist": self.macd_hist,
            "bbUpper": self.bb_upper,
            "bbLower": self.bb_lower,
            "psar": self.psar,
        }


@dataclass
class IndicatorEngine:
    """One calculator of each kind for a single symbol/timeframe stream.

    The ``sma20``/``ema20`` fields of the snapshot carry the short period and
    ``sma50``/``ema50`` the long one, whatever periods are configured.
    """

    sma_short_period: int = 20
    sma_long_period: int = 50
    ema_short_period: int = 20
    ema_long_period: int = 50
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bb_period: int = 20
    bb_multiplier: float = 2.0
    stoch_k_period: int = 14
    stoch_d_period: int = 3
    stoch_rsi_period: int = 14
    stoch_rsi_stoch_period: int = 14
    stoch_rsi_d_period: int = 3
    psar_step: float = 0.02
    psar_max_step: float = 0.2
    bars_processed: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self._sma_short = SMACalculator(self.sma_short_period)
        self._sma_long = SMACalculator(self.sma_long_period)
        self._ema_short = EMACalculator(self.ema_short_period)
        self._ema_long = EMACalculator(self.ema_long_period)
        self._rsi = RSICalculator(self.rsi_period)
        self._macd = MACDCalculator(self.macd_fast, self.macd_slow, self.macd_signal)
        self._bb = BollingerBandsCalculator(self.bb_period, self.bb_multiplier)
        self._stoch = StochasticCalculator(self.stoch_k_period, self.stoch_d_period)
        self._stoch_rsi = StochasticRSICalculator(
            self.stoch_rsi_period, self.stoch_rsi_stoch_period, self.stoch_rsi_d_period
        )
        self._psar = ParabolicSARCalculator(self.psar_step, self.psar_max_step)

    @classmethod
    def from_settings(cls, settings) -> "IndicatorEngine":
        return cls(
            sma_short_period=settings.sma_short_period,
            sma_long_period=settings.sma_long_period,
            ema_short_period=settings.ema_short_period,
            ema_long_period=settings.ema_long_period,
            rsi_period=settings.rsi_period,
            macd_fast=settings.macd_fast,
            macd_slow=settings.macd_slow,
            macd_signal=settings.macd_signal,
            bb_period=settings.bb_period,
            bb_multiplier=settings.bb_multiplier,
            stoch_k_period=settings.stoch_k_period,
            stoch_d_period=settings.stoch_d_period,
            stoch_rsi_period=settings.stoch_rsi_period,
            stoch_rsi_stoch_period=settings.stoch_rsi_stoch_period,
            stoch_rsi_d_period=settings.stoch_rsi_d_period,
            psar_step=settings.psar_step,
            psar_max_step=settings.psar_max_step,
        )

    def update(self, bar: PriceBar) -> IndicatorSnapshot:
        close = bar.close
        macd = self._macd.calculate(close)
        bb = self._bb.calculate(close)
        stoch = self._stoch.calculate(bar.high, bar.low, close)
        stoch_rsi = self._stoch_rsi.calculate(close)
        psar = self._psar.calculate(bar.high, bar.low)
        self.bars_processed += 1

        return IndicatorSnapshot(
            sma20=self._sma_short.calculate(close),
            sma50=self._sma_long.calculate(close),
            ema20=self._ema_short.calculate(close),
            ema50=self._ema_long.calculate(close),
            rsi=self._rsi.calculate(close),
            macd=macd.macd,
            macd_signal=macd.signal_line,
            macd_hist=macd.histogram,
            bb_upper=bb.upper,
            bb_middle=bb.middle,
            bb_lower=bb.lower,
            stoch_k=stoch.k,
            stoch_d=stoch.d,
            stoch_rsi_k=stoch_rsi.k,
            stoch_rsi_d=stoch_rsi.d,
            psar=psar.value,
        )
