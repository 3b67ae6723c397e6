# models.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Literal, Optional

from indicators import IndicatorEngine, IndicatorSnapshot, PriceBar
from signals import calculate_overall_signal, calculate_signals

OverallSignal = Literal["strong_buy", "buy", "neutral", "sell", "strong_sell"]


# The rolling state for one symbol
class SymbolState:
    def __init__(self, engine: IndicatorEngine):
        # One calculator set per symbol; never shared between streams
        self.engine = engine
        self.latest_close: Optional[float] = None
        self.latest_snapshot = IndicatorSnapshot()
        self.latest_signals: Dict[str, str] = {}
        self.overall_signal: str = "neutral"
        self.signal_strength: float = 0.0

    def add_bar(self, bar: PriceBar) -> None:
        snapshot = self.engine.update(bar)
        signals = calculate_signals(snapshot, bar.close)
        overall = calculate_overall_signal(signals)

        self.latest_close = bar.close
        self.latest_snapshot = snapshot
        self.latest_signals = signals
        self.overall_signal = overall["signal"]
        self.signal_strength = overall["strength"]


class SnapshotModel(BaseModel):
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


# The response model for the GET /signal endpoint
class SignalResponse(BaseModel):
    symbol: str
    close: Optional[float]
    bars: int
    indicators: SnapshotModel
    signals: Dict[str, Literal["buy", "sell", "neutral"]]
    overall: OverallSignal
    strength: float  # [0, 1]


# One row of pre-computed history for the batch signal generator
class HistoricalRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    close: float
    sma20: Optional[float] = None
    sma50: Optional[float] = None
    ema20: Optional[float] = None
    ema50: Optional[float] = None
    rsi14: Optional[float] = None
    stoch_k: Optional[float] = Field(None, alias="stochK")
    stoch_d: Optional[float] = Field(None, alias="stochD")
    stoch_rsi_k: Optional[float] = Field(None, alias="stochRsiK")
    stoch_rsi_d: Optional[float] = Field(None, alias="stochRsiD")
    macd_line: Optional[float] = Field(None, alias="macdLine")
    macd_signal: Optional[float] = Field(None, alias="macdSignal")
    macd_hist: Optional[float] = Field(None, alias="macdHist")
    bb_upper: Optional[float] = Field(None, alias="bbUpper")
    bb_lower: Optional[float] = Field(None, alias="bbLower")
    psar: Optional[float] = None


class HistoryRequest(BaseModel):
    data: List[HistoricalRecord]

    def records(self) -> List[dict]:
        return [r.model_dump(by_alias=True) for r in self.data]


class WeightedBacktestRequest(HistoryRequest):
    # Per-bar signal key -> weight; None uses the default weights
    weights: Optional[Dict[str, float]] = None


class BatchSignalResponse(BaseModel):
    length: int
    signals: Dict[str, List[Literal["BUY", "SELL", "HOLD"]]]


# Global state store, shared across the application
# Key: Symbol (str), Value: SymbolState
GLOBAL_STATE: Dict[str, SymbolState] = {}
