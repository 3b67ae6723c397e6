# backtest_runner.py
"""
Single-indicator backtest over OHLC history.

How it works:
- Bars are streamed through an ``IndicatorEngine`` (same code path as the live
  service) and turned into historical records after a warm-up.
- ``generate_all_signals`` produces BUY/SELL/HOLD series for each indicator family.
- One family drives a long-only strategy: BUY opens a position at the close when
  flat, SELL closes it, and anything still open is closed at the last close.
- History is split 80/20 into train/test slices; comparing the two ROIs flags
  likely overfitting.

Outputs per slice: ROI %, win rate %, trades, wins, final capital, max drawdown %,
Sharpe and Sortino ratios (per-bar returns annualised for hourly bars).

A second mode trades a weighted vote of the per-bar buy/sell/neutral signals
(``backtest_with_weights``); ``optimize_indicator_weights`` tries the trend,
momentum and volatility groups and their unions and keeps the best one.
"""

from __future__ import annotations

import argparse
import csv
import logging
import math
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from config import get_settings
from indicators import IndicatorEngine, IndicatorSnapshot, PriceBar
from signals import BUY, HOLD, SELL, InvalidInputError, calculate_signals, generate_all_signals

logger = logging.getLogger(__name__)

INITIAL_CAPITAL = 10_000.0
TRAIN_FRACTION = 0.8
# Hourly bars, 252 trading days
ANNUALIZATION = math.sqrt(252 * 24)

INDICATORS = (
    "sma",
    "ema",
    "rsi",
    "macd",
    "bollinger_bands",
    "stochastic",
    "stochastic_rsi",
    "parabolic_sar",
)

# Weighted backtest works on the per-bar signal keys of ``calculate_signals``
TREND = ("sma", "ema", "psar")
MOMENTUM = ("rsi", "macd", "stochastic", "stochastic_rsi")
VOLATILITY = ("bollinger_bands",)

BASE_WEIGHTS = {
    "sma": 1.5,
    "ema": 1.5,
    "psar": 1.0,
    "rsi": 1.0,
    "macd": 1.0,
    "stochastic": 0.8,
    "stochastic_rsi": 0.8,
    "bollinger_bands": 1.2,
}

COMBOS = (
    ("Trend Only", TREND),
    ("Momentum Only", MOMENTUM),
    ("Volatility Only", VOLATILITY),
    ("Trend + Momentum", TREND + MOMENTUM),
    ("All Combined", TREND + MOMENTUM + VOLATILITY),
)

SIGNAL_SCORES = {"buy": 1, "sell": -1}
# |weighted score| needed before the vote trades
HOLD_THRESHOLD = 0.15


@dataclass
class BacktestResult:
    roi: float           # percent
    win_rate: float      # percent
    trades: int
    wins: int
    final_capital: float
    max_drawdown: float  # percent, peak to trough
    sharpe_ratio: Optional[float]
    sortino_ratio: Optional[float]


class IndicatorBacktester:
    def __init__(self, initial_capital: float = INITIAL_CAPITAL) -> None:
        if initial_capital <= 0:
            raise ValueError("initial_capital must be > 0")
        self.initial_capital = initial_capital

    def run(self, closes: Sequence[Optional[float]], signals: Sequence[str]) -> BacktestResult:
        """Trade ``signals`` at ``closes``; bars without a positive close are not traded."""
        if len(closes) != len(signals):
            raise InvalidInputError("closes and signals must have the same length")

        cap = self.initial_capital
        entry: Optional[float] = None
        last_price: Optional[float] = None
        wins = 0
        trades = 0
        equity: List[float] = []

        for price, signal in zip(closes, signals):
            if price is None or price <= 0:
                equity.append(cap)
                continue
            last_price = price
            if signal == BUY and entry is None:
                entry = price
            elif signal == SELL and entry is not None:
                cap, won = self._close(cap, entry, price)
                wins += won
                trades += 1
                entry = None
            equity.append(cap)

        # Flatten whatever is still open at the last tradable close
        if entry is not None:
            cap, won = self._close(cap, entry, last_price)
            wins += won
            trades += 1

        sharpe, sortino = risk_ratios(equity)
        return BacktestResult(
            roi=round((cap - self.initial_capital) / self.initial_capital * 100.0, 2),
            win_rate=round(wins / trades * 100.0, 2) if trades else 0.0,
            trades=trades,
            wins=wins,
            final_capital=round(cap, 2),
            max_drawdown=max_drawdown(equity),
            sharpe_ratio=sharpe,
            sortino_ratio=sortino,
        )

    @staticmethod
    def _close(cap: float, entry: float, price: float):
        pnl = price - entry
        # Whole capital is invested at entry
        return cap + (cap / entry) * pnl, int(pnl > 0)


def max_drawdown(equity: Sequence[float]) -> float:
    if not equity:
        return 0.0
    peak = equity[0]
    max_dd = 0.0
    for eq in equity:
        if eq > peak:
            peak = eq
        dd = (peak - eq) / peak * 100.0
        if dd > max_dd:
            max_dd = dd
    return round(max_dd, 2)


def risk_ratios(equity: Sequence[float]):
    """Return (sharpe, sortino); either is None when its deviation is zero."""
    if len(equity) < 2:
        return None, None
    rets = [(equity[i] - equity[i - 1]) / equity[i - 1] for i in range(1, len(equity))]
    mean = sum(rets) / len(rets)
    std = math.sqrt(sum((r - mean) ** 2 for r in rets) / len(rets))
    negative = [r for r in rets if r < 0]
    downside = math.sqrt(sum(r * r for r in negative) / len(negative)) if negative else 0.0

    sharpe = round(mean / std * ANNUALIZATION, 2) if std > 0 else None
    sortino = round(mean / downside * ANNUALIZATION, 2) if downside > 0 else None
    return sharpe, sortino


def _run_slice(records: Sequence[Mapping[str, Any]], indicator: str, initial_capital: float) -> BacktestResult:
    bt = IndicatorBacktester(initial_capital)
    if not records:
        return bt.run([], [])
    signals = generate_all_signals(records)[indicator]
    return bt.run([r.get("close") for r in records], signals)


def backtest_indicator(
    records: Optional[Sequence[Mapping[str, Any]]],
    indicator: str,
    initial_capital: float = INITIAL_CAPITAL,
) -> Dict[str, Any]:
    """Backtest one indicator family on a train/test split of ``records``."""
    if not records:
        raise InvalidInputError("Historical data is required")
    if indicator not in INDICATORS:
        raise InvalidInputError(f"Unknown indicator '{indicator}', expected one of {', '.join(INDICATORS)}")

    split = int(len(records) * TRAIN_FRACTION)
    train = _run_slice(records[:split], indicator, initial_capital)
    test = _run_slice(records[split:], indicator, initial_capital)

    if train.roi <= 0:
        ratio = 1.0 if test.roi <= 0 else 0.5
    else:
        ratio = test.roi / train.roi
    overfit = ratio < 0.5

    logger.info(
        "%s: train ROI %.2f%% | test ROI %.2f%% | overfit=%s (%.2f)",
        indicator, train.roi, test.roi, overfit, ratio,
    )
    return {
        "indicator": indicator,
        "data_points": len(records),
        "train": asdict(train),
        "test": asdict(test),
        "overfit_score": round(ratio, 2),
        "overfitting_detected": overfit,
    }


# --- Weighted multi-indicator backtest ---

def snapshot_from_record(record: Mapping[str, Any]) -> IndicatorSnapshot:
    """Rebuild the per-bar snapshot a historical record was projected from."""
    macd, macd_signal = record.get("macdLine"), record.get("macdSignal")
    macd_hist = record.get("macdHist")
    if macd_hist is None and macd is not None and macd_signal is not None:
        macd_hist = macd - macd_signal
    return IndicatorSnapshot(
        sma20=record.get("sma20"),
        sma50=record.get("sma50"),
        ema20=record.get("ema20"),
        ema50=record.get("ema50"),
        rsi=record.get("rsi14"),
        macd=macd,
        macd_signal=macd_signal,
        macd_hist=macd_hist,
        bb_upper=record.get("bbUpper"),
        bb_lower=record.get("bbLower"),
        stoch_k=record.get("stochK"),
        stoch_d=record.get("stochD"),
        stoch_rsi_k=record.get("stochRsiK"),
        stoch_rsi_d=record.get("stochRsiD"),
        psar=record.get("psar"),
    )


def weighted_score(signals: Mapping[str, str], weights: Mapping[str, float]) -> float:
    """Mean of weight * (+1 buy, -1 sell, 0 otherwise) over the weighted indicators."""
    if not weights:
        return 0.0
    total = sum(w * SIGNAL_SCORES.get(signals.get(name, "neutral"), 0) for name, w in weights.items())
    return total / len(weights)


def _check_weights(weights: Mapping[str, float]) -> None:
    if not weights:
        raise InvalidInputError("At least one indicator weight is required")
    unknown = sorted(set(weights) - set(BASE_WEIGHTS))
    if unknown:
        raise InvalidInputError(f"Unknown indicators {unknown}, expected any of {', '.join(BASE_WEIGHTS)}")


def backtest_with_weights(
    records: Optional[Sequence[Mapping[str, Any]]],
    weights: Optional[Mapping[str, float]] = None,
    initial_capital: float = INITIAL_CAPITAL,
) -> Dict[str, Any]:
    """Trade the weighted vote of the per-bar signals.

    BUY when the weighted score rises above ``HOLD_THRESHOLD``, SELL when it
    falls below ``-HOLD_THRESHOLD``. ``weights`` defaults to ``BASE_WEIGHTS``.
    """
    if not records:
        raise InvalidInputError("Historical data is required")
    weights = dict(BASE_WEIGHTS if weights is None else weights)
    _check_weights(weights)

    closes = []
    signals = []
    for record in records:
        close = record.get("close")
        score = weighted_score(calculate_signals(snapshot_from_record(record), close), weights)
        if score > HOLD_THRESHOLD:
            signals.append(BUY)
        elif score < -HOLD_THRESHOLD:
            signals.append(SELL)
        else:
            signals.append(HOLD)
        closes.append(close)

    result = asdict(IndicatorBacktester(initial_capital).run(closes, signals))
    result.update(weights=weights, data_points=len(records))
    return result


def optimize_indicator_weights(
    records: Optional[Sequence[Mapping[str, Any]]],
    initial_capital: float = INITIAL_CAPITAL,
) -> Dict[str, Any]:
    """Backtest every indicator group combination and keep the best ROI.

    The winner's base weights are rescaled to sum to 10. Ties keep the earlier combo.
    """
    if not records:
        raise InvalidInputError("Historical data is required")

    results = []
    for combo, names in COMBOS:
        res = backtest_with_weights(records, {n: BASE_WEIGHTS[n] for n in names}, initial_capital)
        results.append(dict(res, combo=combo, indicators=list(names)))

    best = results[0]
    for res in results[1:]:
        if res["roi"] > best["roi"]:
            best = res

    total = sum(best["weights"].values())
    normalized = {name: round(w / total * 10, 2) for name, w in best["weights"].items()}
    logger.info("Best indicator combo: %s (ROI %.2f%%)", best["combo"], best["roi"])
    return {
        "best_combo": best["combo"],
        "best_weights": normalized,
        "performance": {k: best[k] for k in ("roi", "win_rate", "max_drawdown", "trades")},
        "all_results": results,
    }


def build_history(bars: Sequence[PriceBar], engine: IndicatorEngine, warmup_bars: int = 50) -> List[Dict[str, Any]]:
    """Stream ``bars`` through ``engine`` and return records after the warm-up."""
    records = []
    for i, bar in enumerate(bars):
        snapshot = engine.update(bar)
        if i >= warmup_bars:
            records.append(snapshot.to_record(bar.close))
    return records


# --- CSV ingestion ---

def read_ohlcv_csv(path: str) -> List[PriceBar]:
    """Read an OHLC(V) CSV with a header row and return bars in ascending time order.

    Expected columns (order flexible): timestamp (or time, datetime) as epoch
    seconds or ISO8601, open, high, low, close. Volume is ignored.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    bars: List[PriceBar] = []
    skipped = 0
    with open(path, "r", newline="") as f:
        reader = csv.reader(f)
        header = [h.strip().lower() for h in next(reader, [])]
        missing = [c for c in ("open", "high", "low", "close") if c not in header]
        if missing:
            raise InvalidInputError(f"{path}: missing columns {missing}")
        ts_idx = next((i for i, h in enumerate(header) if h in ("timestamp", "time", "datetime")), 0)
        idx = {c: header.index(c) for c in ("open", "high", "low", "close")}

        for row in reader:
            if not row:
                continue
            try:
                bars.append(PriceBar(
                    open=float(row[idx["open"]]),
                    high=float(row[idx["high"]]),
                    low=float(row[idx["low"]]),
                    close=float(row[idx["close"]]),
                    timestamp=_parse_timestamp(row[ts_idx]),
                ))
            except (ValueError, IndexError):
                skipped += 1

    if skipped:
        logger.warning("%s: skipped %d malformed rows", path, skipped)
    bars.sort(key=lambda b: b.timestamp)
    return bars


def _parse_timestamp(val: str) -> float:
    val = val.strip()
    try:
        return float(val)
    except ValueError:
        pass
    # ISO8601; naive values are taken as UTC
    dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# --- Runner ---

def run_backtest(csv_path: str = "ohlcv.csv", indicator: str = "all") -> List[Dict[str, Any]]:
    settings = get_settings()
    bars = read_ohlcv_csv(csv_path)
    records = build_history(bars, IndicatorEngine.from_settings(settings), settings.warmup_bars)

    names = INDICATORS if indicator == "all" else (indicator,)
    results = [backtest_indicator(records, name) for name in names]

    print("==== Single Indicator Backtest ====")
    print(f"Bars: {len(bars)} | Records after warm-up: {len(records)}")
    for r in results:
        tr, te = r["train"], r["test"]
        print(
            f"{r['indicator']:<16}\ttrain ROI={tr['roi']:.2f}%\ttest ROI={te['roi']:.2f}%"
            f"\twin={te['win_rate']:.2f}%\tMDD={te['max_drawdown']:.2f}%"
            f"\toverfit={r['overfitting_detected']} ({r['overfit_score']:.2f})"
        )
    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    parser = argparse.ArgumentParser(description="Backtest indicator signals over an OHLC CSV")
    parser.add_argument("csv_path", nargs="?", default="ohlcv.csv")
    parser.add_argument("--indicator", default="all", choices=("all",) + INDICATORS)
    args = parser.parse_args()
    run_backtest(args.csv_path, args.indicator)
