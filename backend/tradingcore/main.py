import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradingcore.config import settings
from tradingcore.exceptions import RiskError, TradingError
from tradingcore.routers import (
    execution_router,
    orders_router,
    positions_router,
    risk_router,
    strategies_router,
    system_router,
)
from tradingcore.routers.dependencies import get_trading_system
from tradingcore.services.trading_system import TradingSystem

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Trading Core")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Built on startup so importing the app has no side effects
trading_system: Optional[TradingSystem] = None


def override_get_trading_system() -> TradingSystem:
    if trading_system is None:
        raise RiskError("Trading system is not running")
    return trading_system


app.dependency_overrides[get_trading_system] = override_get_trading_system

app.include_router(strategies_router.router)
app.include_router(risk_router.router)
app.include_router(orders_router.router)
app.include_router(positions_router.router)
app.include_router(execution_router.router)
app.include_router(system_router.router)


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/")
async def root():
    return {"message": "Trading Core API", "mode": settings.bot_mode}


@app.on_event("startup")
async def startup_event():
    global trading_system

    logger.info(f"🚀 Starting trading system in {settings.bot_mode} mode...")
    trading_system = TradingSystem()
    await trading_system.start()
    logger.info("🚀 Startup complete!")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("🛑 Shutting down - waiting for in-flight orders...")
    if trading_system is not None:
        await trading_system.stop()
    logger.info("🛑 Shutdown complete")
