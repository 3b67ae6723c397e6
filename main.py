# main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from config import get_settings

settings = get_settings()

# Configure logging before the web stack starts emitting
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

from fastapi import FastAPI, WebSocket, HTTPException, status
from starlette.websockets import WebSocketDisconnect

from stream_stub import bar_stream
from models import (
    GLOBAL_STATE,
    BatchSignalResponse,
    HistoryRequest,
    WeightedBacktestRequest,
    SignalResponse,
    SnapshotModel,
    SymbolState,
)
from indicators import IndicatorEngine
from signals import InvalidInputError, generate_all_signals
from backtest_runner import backtest_indicator, backtest_with_weights, optimize_indicator_weights

logger = logging.getLogger(__name__)

# --- INITIAL SETUP ---
SYMBOLS_TO_TRACK = tuple(s.upper() for s in settings.symbols)
# One calculator set per symbol
for sym in SYMBOLS_TO_TRACK:
    GLOBAL_STATE[sym] = SymbolState(IndicatorEngine.from_settings(settings))


# --- 1) ASYNC CONSUMER TASK (Runs in the background) ---

async def bar_consumer_task(symbols: List[str]):
    """Feed every incoming bar to its symbol's indicator engine."""
    logger.info("Starting bar consumer for symbols: %s", symbols)
    try:
        async for symbol, bar in bar_stream(
            symbols=symbols, base_price=settings.base_price, interval_ms=settings.interval_ms
        ):
            state = GLOBAL_STATE.get(symbol)
            if state:
                state.add_bar(bar)
    except asyncio.CancelledError:
        logger.info("Bar consumer task cancelled.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.consumer_task = asyncio.create_task(bar_consumer_task(list(SYMBOLS_TO_TRACK)))
    yield
    app.state.consumer_task.cancel()
    await app.state.consumer_task


app = FastAPI(title="Indicator Signal Service", lifespan=lifespan)


def _get_state(symbol: str) -> SymbolState:
    state = GLOBAL_STATE.get(symbol.upper())
    if not state:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Symbol {symbol} not tracked.")
    return state


def _signal_payload(symbol: str, state: SymbolState) -> SignalResponse:
    return SignalResponse(
        symbol=symbol.upper(),
        close=state.latest_close,
        bars=state.engine.bars_processed,
        indicators=SnapshotModel.model_validate(state.latest_snapshot, from_attributes=True),
        signals=state.latest_signals,
        overall=state.overall_signal,
        strength=state.signal_strength,
    )


# --- 2) HTTP endpoints ---

@app.get("/health", tags=["Service"])
async def health():
    return {
        "status": "ok",
        "symbols": {sym: state.engine.bars_processed for sym, state in GLOBAL_STATE.items()},
    }


@app.get("/signal", response_model=SignalResponse, tags=["Signal"])
async def get_signal(symbol: str):
    """Latest indicator snapshot and per-indicator signals, precomputed by the consumer."""
    return _signal_payload(symbol, _get_state(symbol))


@app.post("/signals/batch", response_model=BatchSignalResponse, tags=["Signal"])
async def batch_signals(request: HistoryRequest):
    """Crossover signals over a caller-supplied history."""
    try:
        signals = generate_all_signals(request.records())
    except InvalidInputError as e:
        logger.warning("Rejected batch signal request: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return BatchSignalResponse(length=len(request.data), signals=signals)


@app.post("/backtest/weighted", tags=["Backtest"])
async def backtest_weighted(request: WeightedBacktestRequest):
    """Trade the weighted vote of all per-bar indicator signals."""
    try:
        return backtest_with_weights(request.records(), request.weights)
    except InvalidInputError as e:
        logger.warning("Rejected weighted backtest request: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/backtest/optimize", tags=["Backtest"])
async def backtest_optimize(request: HistoryRequest):
    """Best indicator group and its normalised weights."""
    try:
        return optimize_indicator_weights(request.records())
    except InvalidInputError as e:
        logger.warning("Rejected weight optimisation request: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/backtest/{indicator}", tags=["Backtest"])
async def backtest(indicator: str, request: HistoryRequest):
    try:
        return backtest_indicator(request.records(), indicator)
    except InvalidInputError as e:
        logger.warning("Rejected backtest request for %s: %s", indicator, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# --- 3) WS /ws/signal Endpoint ---

@app.websocket("/ws/signal/{symbol}")
async def websocket_endpoint(websocket: WebSocket, symbol: str):
    """Stream the overall signal; a message goes out whenever it changes."""
    await websocket.accept()
    state = GLOBAL_STATE.get(symbol.upper())
    if not state:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=f"Symbol {symbol} not tracked.")
        return

    try:
        # Initial snapshot so clients receive something on connect
        last_signal = state.overall_signal
        await websocket.send_json(_signal_payload(symbol, state).model_dump())
        while True:
            current_signal = state.overall_signal
            if current_signal != last_signal:
                await websocket.send_json(_signal_payload(symbol, state).model_dump())
                last_signal = current_signal
            # Poll for changes; receiving also surfaces a client disconnect
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=0.1)
            except asyncio.TimeoutError:
                pass

    except WebSocketDisconnect:
        logger.info("Client disconnected from %s WebSocket.", symbol)
    except Exception:
        logger.exception("WebSocket error for %s", symbol)
    finally:
        try:
            await websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass
