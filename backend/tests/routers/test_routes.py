"""
Tests for backend/tradingcore/routers/ and the app in backend/tradingcore/main.py

Covers:
- Strategy listing, config patching and enable/disable
- Risk metrics, limits, admission and sizing
- Order creation, listing and cancellation
- Positions, execution settings and balance reset
- System health, command broadcast and emergency stop
- TradingError -> HTTP status/body mapping
"""

import httpx
import pytest

from tradingcore import main
from tradingcore.exceptions import NotFoundError
from tradingcore.exchange_clients.simulated_client import SimulatedExchangeClient
from tradingcore.routers import strategies_router, system_router
from tradingcore.routers.dependencies import get_trading_system
from tradingcore.schemas import Observation
from tradingcore.services.trading_system import TradingSystem


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def system(bus, cache, session_factory):
    await cache.set("market:BTCUSDT", Observation(symbol="BTCUSDT", price=100.0), 30)
    return TradingSystem(
        bus=bus,
        cache=cache,
        session_factory=session_factory,
        execution_client=SimulatedExchangeClient(cache, starting_balance=10000.0),
        symbols=["BTCUSDT"],
        init_database=False,
    )


@pytest.fixture
async def client(system):
    """HTTP client against the app with the test trading system injected."""
    main.app.dependency_overrides[get_trading_system] = lambda: system
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    main.app.dependency_overrides[get_trading_system] = main.override_get_trading_system


def _assert_error(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["code"] == code
    assert body["detail"]


# =============================================================================
# Direct endpoint calls
# =============================================================================


class TestEndpointFunctions:
    """Endpoint functions called directly with the system dependency."""

    @pytest.mark.asyncio
    async def test_list_strategies(self, system):
        strategies = await strategies_router.list_strategies(system=system)
        assert [s.id for s in strategies] == ["funding-arbitrage", "mean-reversion", "momentum"]
        assert strategies[2].config.weight == 0.4

    @pytest.mark.asyncio
    async def test_get_unknown_strategy_raises(self, system):
        with pytest.raises(NotFoundError):
            await strategies_router.get_strategy("nope", system=system)

    @pytest.mark.asyncio
    async def test_command_normalized_to_upper_case(self, system):
        result = await system_router.broadcast_command(
            system_router.CommandRequest(command="stop_trading"), system=system
        )
        assert result == {"command": "STOP_TRADING", "status": "sent"}


# =============================================================================
# Strategies
# =============================================================================


class TestStrategyRoutes:
    """Tests for /api/strategies"""

    @pytest.mark.asyncio
    async def test_list_and_get(self, client):
        response = await client.get("/api/strategies")
        assert response.status_code == 200
        assert len(response.json()) == 3

        response = await client.get("/api/strategies/momentum")
        assert response.json()["min_observations"] == 20

    @pytest.mark.asyncio
    async def test_unknown_strategy_is_404(self, client):
        """Failure: NotFoundError maps to 404 with its code."""
        _assert_error(await client.get("/api/strategies/nope"), 404, "NOT_FOUND")

    @pytest.mark.asyncio
    async def test_patch_and_disable(self, client):
        response = await client.patch("/api/strategies/momentum/config", json={"weight": 0.25})
        assert response.status_code == 200
        assert response.json()["weight"] == 0.25

        response = await client.post("/api/strategies/momentum/disable")
        assert response.json()["enabled"] is False
        configs = (await client.get("/api/strategies/configs")).json()
        assert configs["momentum"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_invalid_config_is_400(self, client):
        """Failure: ValidationError maps to 400 and nothing changes."""
        _assert_error(
            await client.patch("/api/strategies/momentum/config", json={"weight": 1.5}), 400, "VALIDATION_ERROR"
        )

    @pytest.mark.asyncio
    async def test_signals_and_decisions_empty_before_analysis(self, client):
        assert (await client.get("/api/strategies/signals")).json() == {}
        assert (await client.get("/api/strategies/decisions")).json() == {}


# =============================================================================
# Risk
# =============================================================================


class TestRiskRoutes:
    """Tests for /api/risk"""

    @pytest.mark.asyncio
    async def test_metrics_unavailable_before_first_cycle(self, client):
        """Failure: no snapshot yet is a 503 RISK_ERROR."""
        _assert_error(await client.get("/api/risk/metrics"), 503, "RISK_ERROR")

    @pytest.mark.asyncio
    async def test_metrics_after_cycle(self, client, system):
        await system.risk.run_cycle()
        response = await client.get("/api/risk/metrics")
        assert response.status_code == 200
        assert response.json()["total_balance"] == 10000.0
        assert response.json()["risk_level"] == "LOW"

    @pytest.mark.asyncio
    async def test_limits_round_trip(self, client):
        response = await client.patch("/api/risk/limits", json={"max_leverage": 20})
        assert response.status_code == 200
        assert (await client.get("/api/risk/limits")).json()["max_leverage"] == 20

    @pytest.mark.asyncio
    async def test_validate_position_and_size(self, client, system):
        await system.risk.run_cycle()

        response = await client.post("/api/risk/validate-position", json={
            "symbol": "BTCUSDT", "side": "LONG", "quantity": 0.01, "leverage": 15, "price": 50000.0,
        })
        assessment = response.json()
        assert assessment["is_allowed"] is False
        assert assessment["recommended_leverage"] == 10

        response = await client.post("/api/risk/position-size", json={
            "signal": {"symbol": "BTCUSDT", "action": "BUY", "confidence": 80, "strategy": "aggregated"},
            "current_price": 50000.0,
        })
        assert response.status_code == 200
        assert response.json()["leverage"] == 7


# =============================================================================
# Orders and positions
# =============================================================================


class TestOrderRoutes:
    """Tests for /api/orders and /api/positions"""

    @pytest.mark.asyncio
    async def test_create_list_and_close(self, client):
        """Happy path: a SIM order fills, is listed, opens a position that can be closed."""
        response = await client.post("/api/orders", json={"symbol": "BTCUSDT", "side": "BUY", "quantity": 1.0})
        assert response.status_code == 200
        order = response.json()
        assert order["status"] == "FILLED"

        orders = (await client.get("/api/orders", params={"symbol": "BTCUSDT"})).json()
        assert [o["id"] for o in orders] == [order["id"]]
        pending = (await client.get("/api/orders/pending")).json()
        assert pending[0]["status"] == "PENDING"

        positions = (await client.get("/api/positions")).json()
        assert positions[0]["side"] == "LONG"

        response = await client.post("/api/positions/btcusdt/close")
        assert response.json() == {"symbol": "BTCUSDT", "success": True}
        assert (await client.get("/api/positions")).json() == []

    @pytest.mark.asyncio
    async def test_limit_without_price_is_rejected(self, client):
        """Failure: request validation rejects a LIMIT order without a price."""
        response = await client.post(
            "/api/orders", json={"symbol": "BTCUSDT", "side": "BUY", "type": "LIMIT", "quantity": 1.0}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_unknown_order_is_404(self, client):
        _assert_error(await client.delete("/api/orders/missing"), 404, "NOT_FOUND")

    @pytest.mark.asyncio
    async def test_cancel_filled_order_reports_not_cancelled(self, client):
        order = (await client.post(
            "/api/orders", json={"symbol": "BTCUSDT", "side": "BUY", "quantity": 1.0}
        )).json()
        response = await client.delete(f"/api/orders/{order['id']}")
        assert response.json() == {"order_id": order["id"], "cancelled": False}

    @pytest.mark.asyncio
    async def test_close_all(self, client):
        await client.post("/api/orders", json={"symbol": "BTCUSDT", "side": "SELL", "quantity": 1.0})
        assert (await client.post("/api/positions/close-all")).json() == {"success": True}


# =============================================================================
# Execution
# =============================================================================


class TestExecutionRoutes:
    """Tests for /api/execution"""

    @pytest.mark.asyncio
    async def test_config_patch(self, client):
        response = await client.patch("/api/execution/config", json={"max_order_retries": 5})
        assert response.status_code == 200
        assert response.json()["max_order_retries"] == 5
        assert (await client.get("/api/execution/config")).json()["simulation_mode"] is True

    @pytest.mark.asyncio
    async def test_simulation_mode_is_read_only(self, client):
        _assert_error(
            await client.patch("/api/execution/config", json={"simulation_mode": False}), 400, "VALIDATION_ERROR"
        )

    @pytest.mark.asyncio
    async def test_reset_balance(self, client):
        response = await client.post("/api/execution/reset-balance", json={"amount": 5000.0})
        assert response.json() == {"balance": 5000.0}

        response = await client.post("/api/execution/reset-balance")
        assert response.json() == {"balance": 10000.0}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        metrics = (await client.get("/api/execution/metrics")).json()
        assert metrics["simulation_mode"] is True
        assert metrics["total_orders"] == 0


# =============================================================================
# System
# =============================================================================


class TestSystemRoutes:
    """Tests for /api/system and the app root"""

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["message"] == "Trading Core API"

    @pytest.mark.asyncio
    async def test_health(self, client):
        health = (await client.get("/api/system/health")).json()
        assert health["mode"] == "SIM"
        assert set(health["services"]) == {"execution", "risk", "strategy", "market_feed"}

    @pytest.mark.asyncio
    async def test_unknown_command_is_400(self, client):
        _assert_error(
            await client.post("/api/system/command", json={"command": "self_destruct"}), 400, "VALIDATION_ERROR"
        )

    @pytest.mark.asyncio
    async def test_emergency_stop(self, client):
        response = await client.post("/api/system/emergency-stop")
        assert response.status_code == 200
        assert set(response.json()) == {"strategy", "risk", "execution"}

    @pytest.mark.asyncio
    async def test_not_running_is_503(self):
        """Failure: before startup the API answers 503 instead of crashing."""
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.get("/api/system/health")
        _assert_error(response, 503, "RISK_ERROR")
