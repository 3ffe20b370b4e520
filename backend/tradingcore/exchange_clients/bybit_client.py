"""
ByBit V5 Client

Thin wrapper around pybit's HTTP client for USDT perpetuals with:
- Testnet toggle
- asyncio.to_thread() wrappers for blocking pybit calls
- Per-instance request spacing to stay under the order endpoint rate limit
- Error handling with meaningful exceptions
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from tradingcore.exceptions import APIError

logger = logging.getLogger(__name__)

# Order endpoints allow 10 req/s; 100ms spacing avoids 10006 rate limit errors.
_BYBIT_MIN_INTERVAL = 0.10

# retCode returned by set_leverage when the leverage is already set
LEVERAGE_NOT_MODIFIED = 110043


class ByBitError(APIError):
    """ByBit API error with error code"""

    def __init__(self, message: str, code: int = 0):
        self.code = code
        super().__init__(message, status_code=502)


def _check_response(resp: dict) -> dict:
    """Check ByBit response for errors and raise if needed."""
    ret_code = resp.get("retCode", -1)
    if ret_code != 0:
        msg = resp.get("retMsg", "Unknown ByBit error")
        safe_msg = msg[:200] if msg else "Unknown error"
        raise ByBitError(f"ByBit API error ({ret_code}): {safe_msg}", ret_code)
    return resp


class ByBitClient:
    """
    Low-level wrapper around pybit HTTP client.

    All methods are async via asyncio.to_thread() since pybit is synchronous.
    Every call returns the raw V5 response dict after the retCode check.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        testnet: bool = False,
    ):
        from pybit.unified_trading import HTTP

        self._testnet = testnet
        self._http = HTTP(
            testnet=testnet,
            api_key=api_key or None,
            api_secret=api_secret or None,
        )
        self._rate_lock = asyncio.Lock()
        self._last_request_time: float = 0.0
        logger.info(f"ByBitClient initialized (testnet={testnet})")

    async def _rate_limited_call(self, func, **kwargs):
        """Execute a pybit call with per-instance rate limiting."""
        async with self._rate_lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < _BYBIT_MIN_INTERVAL:
                await asyncio.sleep(_BYBIT_MIN_INTERVAL - elapsed)
            self._last_request_time = time.monotonic()
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ByBitError:
            raise
        except Exception as e:
            # pybit raises InvalidRequestError (retCode in status_code) or FailedRequestError
            code = getattr(e, "status_code", 0)
            raise ByBitError(f"ByBit request failed: {str(e)[:200]}", code if isinstance(code, int) else 0)

    # ----------------------------------------------------------
    # Account / Balance
    # ----------------------------------------------------------

    async def get_wallet_balance(self, account_type: str = "UNIFIED", coin: str = "USDT") -> dict:
        resp = await self._rate_limited_call(
            self._http.get_wallet_balance, accountType=account_type, coin=coin
        )
        return _check_response(resp)

    # ----------------------------------------------------------
    # Market Data
    # ----------------------------------------------------------

    async def get_tickers(self, category: str = "linear", symbol: Optional[str] = None) -> dict:
        kwargs: Dict[str, Any] = {"category": category}
        if symbol:
            kwargs["symbol"] = symbol
        resp = await self._rate_limited_call(self._http.get_tickers, **kwargs)
        return _check_response(resp)

    # ----------------------------------------------------------
    # Orders
    # ----------------------------------------------------------

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        qty: str,
        category: str = "linear",
        price: Optional[str] = None,
        trigger_price: Optional[str] = None,
        trigger_direction: Optional[int] = None,
        time_in_force: str = "GTC",
        reduce_only: bool = False,
    ) -> dict:
        """Place an order on ByBit."""
        kwargs: Dict[str, Any] = {
            "category": category,
            "symbol": symbol,
            "side": side.capitalize(),  # "Buy" or "Sell"
            "orderType": order_type,  # "Market" or "Limit"
            "qty": qty,
            "timeInForce": time_in_force,
        }
        if price:
            kwargs["price"] = price
        if trigger_price:
            kwargs["triggerPrice"] = trigger_price
        if trigger_direction:
            kwargs["triggerDirection"] = trigger_direction
        if reduce_only:
            kwargs["reduceOnly"] = True

        resp = await self._rate_limited_call(self._http.place_order, **kwargs)
        return _check_response(resp)

    async def get_open_orders(
        self,
        category: str = "linear",
        symbol: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> dict:
        kwargs: Dict[str, Any] = {"category": category}
        if symbol:
            kwargs["symbol"] = symbol
        if order_id:
            kwargs["orderId"] = order_id
        resp = await self._rate_limited_call(self._http.get_open_orders, **kwargs)
        return _check_response(resp)

    async def get_order_history(
        self,
        category: str = "linear",
        symbol: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 50,
    ) -> dict:
        kwargs: Dict[str, Any] = {"category": category, "limit": limit}
        if symbol:
            kwargs["symbol"] = symbol
        if order_id:
            kwargs["orderId"] = order_id
        resp = await self._rate_limited_call(self._http.get_order_history, **kwargs)
        return _check_response(resp)

    async def cancel_order(self, symbol: str, order_id: str, category: str = "linear") -> dict:
        resp = await self._rate_limited_call(
            self._http.cancel_order,
            category=category,
            symbol=symbol,
            orderId=order_id,
        )
        return _check_response(resp)

    # ----------------------------------------------------------
    # Positions
    # ----------------------------------------------------------

    async def get_positions(
        self,
        category: str = "linear",
        symbol: Optional[str] = None,
        settle_coin: str = "USDT",
    ) -> dict:
        """Get open positions. Linear requires a symbol or settleCoin."""
        kwargs: Dict[str, Any] = {"category": category}
        if symbol:
            kwargs["symbol"] = symbol
        else:
            kwargs["settleCoin"] = settle_coin
        resp = await self._rate_limited_call(self._http.get_positions, **kwargs)
        return _check_response(resp)

    async def set_leverage(self, symbol: str, leverage: int, category: str = "linear") -> dict:
        """Set buy and sell leverage for a symbol. Unchanged leverage is not an error."""
        try:
            resp = await self._rate_limited_call(
                self._http.set_leverage,
                category=category,
                symbol=symbol,
                buyLeverage=str(leverage),
                sellLeverage=str(leverage),
            )
            return _check_response(resp)
        except ByBitError as e:
            if e.code == LEVERAGE_NOT_MODIFIED or "not modified" in e.message.lower():
                logger.debug(f"Leverage for {symbol} already {leverage}x")
                return {"retCode": 0, "retMsg": "OK"}
            raise
