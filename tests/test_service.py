"""Async endpoint tests for the indicator signal service.

Covers:
- GET /signal returns the latest snapshot for a tracked symbol, 404 otherwise.
- POST /signals/batch and POST /backtest/{indicator} validate their history.
- POST /backtest/weighted and POST /backtest/optimize score weighted indicator votes.
- WS /ws/signal sends an initial snapshot on connect, then again when the overall signal changes.

We use httpx.AsyncClient for the HTTP tests and FastAPI TestClient for WebSocket.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport

from main import app
from models import GLOBAL_STATE


HISTORY = [
	{"close": 10.0, "sma20": 9.0, "sma50": 10.0, "rsi14": 25.0},
	{"close": 12.0, "sma20": 11.0, "sma50": 10.0, "rsi14": 35.0},
	{"close": 11.0, "sma20": 9.5, "sma50": 10.0, "rsi14": 40.0},
]


@pytest.mark.asyncio
async def test_get_signal_endpoint_returns_structure():
	# Manually run lifespan to start background tasks for AsyncClient usage
	async with app.router.lifespan_context(app):
		transport = ASGITransport(app=app)
		async with AsyncClient(transport=transport, base_url="http://test") as client:
			await asyncio.sleep(0.3)
			resp = await client.get("/signal", params={"symbol": "xyz"})
			assert resp.status_code == 200, resp.text
			data = resp.json()
			assert {"symbol", "close", "bars", "indicators", "signals", "overall", "strength"} <= set(data)
			assert data["symbol"] == "XYZ"
			assert data["bars"] >= 1
			assert data["close"] > 0
			# EMA and PSAR are defined from the first bar
			assert data["indicators"]["ema20"] is not None
			assert data["indicators"]["psar"] is not None
			assert data["overall"] in {"strong_buy", "buy", "neutral", "sell", "strong_sell"}
			assert 0.0 <= data["strength"] <= 1.0
			assert set(data["signals"].values()) <= {"buy", "sell", "neutral"}


@pytest.mark.asyncio
async def test_unknown_symbol_is_404():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as client:
		resp = await client.get("/signal", params={"symbol": "NOPE"})
		assert resp.status_code == 404


@pytest.mark.asyncio
async def test_batch_signals_endpoint():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as client:
		resp = await client.post("/signals/batch", json={"data": HISTORY})
		assert resp.status_code == 200, resp.text
		body = resp.json()
		assert body["length"] == 3
		assert body["signals"]["sma"] == ["HOLD", "BUY", "SELL"]
		assert body["signals"]["rsi"] == ["HOLD", "BUY", "HOLD"]

		resp = await client.post("/signals/batch", json={"data": []})
		assert resp.status_code == 400
		assert "Historical data is required" in resp.json()["detail"]

		resp = await client.post("/signals/batch", json={})
		assert resp.status_code == 422


@pytest.mark.asyncio
async def test_backtest_endpoint():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as client:
		resp = await client.post("/backtest/sma", json={"data": HISTORY})
		assert resp.status_code == 200, resp.text
		body = resp.json()
		assert body["indicator"] == "sma"
		assert {"train", "test", "overfit_score", "overfitting_detected"} <= set(body)

		resp = await client.post("/backtest/volume", json={"data": HISTORY})
		assert resp.status_code == 400


@pytest.mark.asyncio
async def test_weighted_backtest_endpoint():
	history = [{"close": 10.0, "psar": 9.0}, {"close": 12.0, "psar": 13.0}]
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as client:
		resp = await client.post("/backtest/weighted", json={"data": history, "weights": {"psar": 1.0}})
		assert resp.status_code == 200, resp.text
		body = resp.json()
		assert body["trades"] == 1
		assert body["roi"] == pytest.approx(20.0)

		resp = await client.post("/backtest/weighted", json={"data": history, "weights": {"volume": 1.0}})
		assert resp.status_code == 400

		resp = await client.post("/backtest/weighted", json={"data": []})
		assert resp.status_code == 400


@pytest.mark.asyncio
async def test_optimize_endpoint():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as client:
		resp = await client.post("/backtest/optimize", json={"data": HISTORY})
		assert resp.status_code == 200, resp.text
		body = resp.json()
		assert {"best_combo", "best_weights", "performance", "all_results"} <= set(body)
		assert len(body["all_results"]) == 5
		assert sum(body["best_weights"].values()) == pytest.approx(10.0, abs=0.05)

		resp = await client.post("/backtest/optimize", json={"data": []})
		assert resp.status_code == 400


def test_websocket_signal_sends_snapshot_message():
	# Use TestClient which provides WebSocket testing utilities
	with TestClient(app) as client:
		# Let the consumer produce at least one bar
		time.sleep(0.2)
		assert client.get("/health").json()["status"] == "ok"
		with client.websocket_connect("/ws/signal/XYZ") as ws:
			message = ws.receive_json()
			assert message.get("symbol") == "XYZ"
			assert "overall" in message
			assert "indicators" in message


def test_websocket_pushes_when_overall_signal_changes():
	# No lifespan: the consumer stays off and the test drives the state
	client = TestClient(app)
	state = GLOBAL_STATE["DEF"]
	original = state.overall_signal
	try:
		with client.websocket_connect("/ws/signal/DEF") as ws:
			first = ws.receive_json()
			assert first["overall"] == original
			state.overall_signal = "strong_sell" if original == "strong_buy" else "strong_buy"
			pushed = ws.receive_json()
			assert pushed["symbol"] == "DEF"
			assert pushed["overall"] == state.overall_signal
	finally:
		state.overall_signal = original
