"""Turn indicator values into trading signals.

Two independent modes:

- ``calculate_signals``: level-based, reads the latest ``IndicatorSnapshot`` plus
  the current price and classifies each indicator as "buy" | "sell" | "neutral".
  Indicators whose inputs are missing are left out of the result.
- ``generate_*_signals`` / ``generate_all_signals``: edge-based, walks complete
  historical series and emits "BUY" | "SELL" | "HOLD" per index, firing only at
  the index where two series change relative order (Bollinger is the exception
  and uses a plain band test from index 2 on).

RSI is deliberately asymmetric between the modes: a snapshot says "buy" while
RSI sits below 30, the batch mode says "BUY" only on the bar RSI climbs back
above 30.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from indicators import IndicatorSnapshot

RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0
STOCH_OVERSOLD = 20.0
STOCH_OVERBOUGHT = 80.0
# Fraction of the band width treated as "near" a Bollinger band.
BB_PROXIMITY = 0.1

BUY, SELL, HOLD = "BUY", "SELL", "HOLD"

Series = Sequence[Optional[float]]


class InvalidInputError(ValueError):
    """Caller supplied unusable input (e.g. no historical data)."""


class MisalignedSeriesError(InvalidInputError):
    """Batch series passed together do not share the same length."""


# --- Per-bar classification ---

def _trend_signal(price: float, short: float, long: float) -> str:
    if price > short and price > long and short > long:
        return "buy"
    if price < short and price < long and short < long:
        return "sell"
    return "neutral"


def _band_signal(k: float, d: float) -> str:
    if k > STOCH_OVERBOUGHT and d > STOCH_OVERBOUGHT:
        return "sell"
    if k < STOCH_OVERSOLD and d < STOCH_OVERSOLD:
        return "buy"
    return "neutral"


def calculate_signals(snapshot: IndicatorSnapshot, price: Optional[float]) -> Dict[str, str]:
    """Classify every indicator in ``snapshot`` against ``price``.

    Contract:
    - Output keys: sma, ema, rsi, macd, bollinger_bands, stochastic,
      stochastic_rsi, psar; each maps to "buy" | "sell" | "neutral"
    - A key is omitted (not defaulted) when any input it needs is None
    """
    s = snapshot
    signals: Dict[str, str] = {}
    has_price = price is not None

    if has_price and s.sma20 is not None and s.sma50 is not None:
        signals["sma"] = _trend_signal(price, s.sma20, s.sma50)

    if has_price and s.ema20 is not None and s.ema50 is not None:
        signals["ema"] = _trend_signal(price, s.ema20, s.ema50)

    if s.rsi is not None:
        if s.rsi > RSI_OVERBOUGHT:
            signals["rsi"] = "sell"
        elif s.rsi < RSI_OVERSOLD:
            signals["rsi"] = "buy"
        else:
            signals["rsi"] = "neutral"

    if s.macd is not None and s.macd_signal is not None and s.macd_hist is not None:
        if s.macd > s.macd_signal and s.macd_hist > 0:
            signals["macd"] = "buy"
        elif s.macd < s.macd_signal and s.macd_hist < 0:
            signals["macd"] = "sell"
        else:
            signals["macd"] = "neutral"

    if has_price and s.bb_upper is not None and s.bb_lower is not None:
        width = s.bb_upper - s.bb_lower
        if price > s.bb_upper - width * BB_PROXIMITY:
            signals["bollinger_bands"] = "sell"
        elif price < s.bb_lower + width * BB_PROXIMITY:
            signals["bollinger_bands"] = "buy"
        else:
            signals["bollinger_bands"] = "neutral"

    if s.stoch_k is not None and s.stoch_d is not None:
        signals["stochastic"] = _band_signal(s.stoch_k, s.stoch_d)

    if s.stoch_rsi_k is not None and s.stoch_rsi_d is not None:
        signals["stochastic_rsi"] = _band_signal(s.stoch_rsi_k, s.stoch_rsi_d)

    if has_price and s.psar is not None:
        if price > s.psar:
            signals["psar"] = "buy"
        elif price < s.psar:
            signals["psar"] = "sell"
        else:
            signals["psar"] = "neutral"

    return signals


def calculate_overall_signal(signals: Mapping[str, str]) -> Dict[str, Any]:
    """Majority vote over a per-bar signal set.

    Returns {"signal": strong_buy|buy|neutral|sell|strong_sell, "strength": ratio}.
    Strength is always 0.0 for neutral.
    """
    total = len(signals)
    if total == 0:
        return {"signal": "neutral", "strength": 0.0}

    buy_ratio = sum(1 for v in signals.values() if v == "buy") / total
    sell_ratio = sum(1 for v in signals.values() if v == "sell") / total

    if buy_ratio >= 0.7:
        return {"signal": "strong_buy", "strength": buy_ratio}
    if buy_ratio >= 0.6:
        return {"signal": "buy", "strength": buy_ratio}
    if sell_ratio >= 0.7:
        return {"signal": "strong_sell", "strength": sell_ratio}
    if sell_ratio >= 0.6:
        return {"signal": "sell", "strength": sell_ratio}
    return {"signal": "neutral", "strength": 0.0}


# --- Batch (historical) signals ---

class AlignedSeries:
    """Named series that are guaranteed to share one length and index."""

    def __init__(self, **series: Series):
        if not series:
            raise InvalidInputError("at least one series is required")
        lengths = {name: len(values) for name, values in series.items()}
        if len(set(lengths.values())) != 1:
            raise MisalignedSeriesError(f"series lengths differ: {lengths}")
        self._series = {name: list(values) for name, values in series.items()}
        self.length = next(iter(lengths.values()))

    def __len__(self) -> int:
        return self.length

    def __getitem__(self, name: str) -> List[Optional[float]]:
        return self._series[name]


def _crossed_above(prev_a, prev_b, a, b) -> bool:
    if None in (prev_a, prev_b, a, b):
        return False
    return prev_a <= prev_b and a > b


def _crossed_below(prev_a, prev_b, a, b) -> bool:
    if None in (prev_a, prev_b, a, b):
        return False
    return prev_a >= prev_b and a < b


def _crossover_signals(fast: Series, slow: Series) -> List[str]:
    aligned = AlignedSeries(fast=fast, slow=slow)
    a, b = aligned["fast"], aligned["slow"]
    signals = [HOLD] * len(aligned)
    for i in range(1, len(aligned)):
        if _crossed_above(a[i - 1], b[i - 1], a[i], b[i]):
            signals[i] = BUY
        elif _crossed_below(a[i - 1], b[i - 1], a[i], b[i]):
            signals[i] = SELL
    return signals


def generate_ma_signals(short_ma: Series, long_ma: Series) -> List[str]:
    """Golden/death cross of a short moving average over a long one."""
    return _crossover_signals(short_ma, long_ma)


def generate_ema_signals(closes: Series, ema_values: Series) -> List[str]:
    """Close crossing its EMA."""
    return _crossover_signals(closes, ema_values)


def generate_macd_signals(macd_line: Series, signal_line: Series) -> List[str]:
    return _crossover_signals(macd_line, signal_line)


def generate_parabolic_sar_signals(closes: Series, sar_values: Series) -> List[str]:
    return _crossover_signals(closes, sar_values)


def generate_rsi_signals(
    rsi_values: Series, lower: float = RSI_OVERSOLD, upper: float = RSI_OVERBOUGHT
) -> List[str]:
    """BUY when RSI climbs up through ``lower``, SELL when it drops down through ``upper``."""
    rsi = AlignedSeries(rsi=rsi_values)["rsi"]
    signals = [HOLD] * len(rsi)
    for i in range(1, len(rsi)):
        prev, curr = rsi[i - 1], rsi[i]
        if prev is None or curr is None:
            continue
        if prev <= lower and curr > lower:
            signals[i] = BUY
        elif prev >= upper and curr < upper:
            signals[i] = SELL
    return signals


def generate_stochastic_signals(
    stoch_k: Series,
    stoch_d: Series,
    oversold: float = STOCH_OVERSOLD,
    overbought: float = STOCH_OVERBOUGHT,
) -> List[str]:
    """%K crossing %D, counted only inside the oversold/overbought zones."""
    aligned = AlignedSeries(k=stoch_k, d=stoch_d)
    k, d = aligned["k"], aligned["d"]
    signals = [HOLD] * len(aligned)
    for i in range(1, len(aligned)):
        if _crossed_above(k[i - 1], d[i - 1], k[i], d[i]) and k[i] < oversold:
            signals[i] = BUY
        elif _crossed_below(k[i - 1], d[i - 1], k[i], d[i]) and k[i] > overbought:
            signals[i] = SELL
    return signals


def generate_stochastic_rsi_signals(
    stoch_rsi_k: Series,
    stoch_rsi_d: Series,
    oversold: float = STOCH_OVERSOLD,
    overbought: float = STOCH_OVERBOUGHT,
) -> List[str]:
    return generate_stochastic_signals(stoch_rsi_k, stoch_rsi_d, oversold, overbought)


def generate_bollinger_bands_signals(closes: Series, upper_band: Series, lower_band: Series) -> List[str]:
    """Close at or beyond a band; starts at index 2."""
    aligned = AlignedSeries(close=closes, upper=upper_band, lower=lower_band)
    close, upper, lower = aligned["close"], aligned["upper"], aligned["lower"]
    signals = [HOLD] * len(aligned)
    for i in range(2, len(aligned)):
        if close[i] is None:
            continue
        if lower[i] is not None and close[i] <= lower[i]:
            signals[i] = BUY
        elif upper[i] is not None and close[i] >= upper[i]:
            signals[i] = SELL
    return signals


def generate_all_signals(historical_data: Optional[Sequence[Mapping[str, Any]]]) -> Dict[str, List[str]]:
    """Run every batch generator over a list of historical records.

    Each record carries close, sma20, sma50, ema20, rsi14, stochK, stochD,
    stochRsiK, stochRsiD, macdLine, macdSignal, bbUpper, bbLower and psar;
    missing fields count as None. Raises InvalidInputError when the history is
    None or empty.
    """
    if not historical_data:
        raise InvalidInputError("Historical data is required")

    def column(name: str) -> List[Optional[float]]:
        return [record.get(name) for record in historical_data]

    closes = column("close")
    return {
        "sma": generate_ma_signals(column("sma20"), column("sma50")),
        "ema": generate_ema_signals(closes, column("ema20")),
        "rsi": generate_rsi_signals(column("rsi14")),
        "stochastic": generate_stochastic_signals(column("stochK"), column("stochD")),
        "stochastic_rsi": generate_stochastic_rsi_signals(column("stochRsiK"), column("stochRsiD")),
        "macd": generate_macd_signals(column("macdLine"), column("macdSignal")),
        "bollinger_bands": generate_bollinger_bands_signals(closes, column("bbUpper"), column("bbLower")),
        "parabolic_sar": generate_parabolic_sar_signals(closes, column("psar")),
    }
