import json
from typing import Annotated, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

DEFAULT_TRADING_SYMBOLS = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "ADAUSDT", "DOTUSDT",
    "LINKUSDT", "LTCUSDT", "BCHUSDT", "XLMUSDT", "EOSUSDT",
]


class Settings(BaseSettings):
    # Trading mode: SIM (paper fills against cached prices) or LIVE (Bybit)
    bot_mode: str = "SIM"
    trading_symbols: Annotated[List[str], NoDecode] = DEFAULT_TRADING_SYMBOLS

    # Risk defaults (overridden by persisted system_config rows)
    max_daily_loss_percent: float = 5.0
    default_leverage: int = 5
    max_leverage: int = 10
    max_position_percent: float = 30.0
    max_drawdown_percent: float = 15.0
    max_open_positions: int = 5
    concentration_limit_percent: float = 40.0
    liquidation_buffer_percent: float = 20.0

    # Cadences (seconds)
    signal_interval_seconds: float = 30.0
    risk_interval_seconds: float = 30.0
    order_monitor_interval_seconds: float = 5.0
    market_feed_interval_seconds: float = 5.0

    # Request/reply timeout between services
    service_timeout_seconds: float = 10.0

    # Paper trading
    simulated_starting_balance: float = 100000.0

    # Database
    database_url: str = "sqlite+aiosqlite:///./tradingcore.db"

    # ByBit API (only needed in LIVE mode)
    bybit_api_key: str = ""
    bybit_api_secret: str = ""
    bybit_testnet: bool = True

    # Web
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]
    log_level: str = "INFO"

    @field_validator("bot_mode")
    @classmethod
    def normalize_bot_mode(cls, v: str) -> str:
        mode = (v or "").strip().upper()
        if mode not in ("SIM", "LIVE"):
            raise ValueError(f"bot_mode must be SIM or LIVE, got {v!r}")
        return mode

    @field_validator("trading_symbols", mode="before")
    @classmethod
    def split_symbols(cls, v):
        """Accept TRADING_SYMBOLS=BTCUSDT,ETHUSDT from the environment"""
        if isinstance(v, str):
            if v.strip().startswith("["):
                return json.loads(v)
            return [s.strip().upper() for s in v.split(",") if s.strip()]
        return v

    @property
    def simulation_mode(self) -> bool:
        return self.bot_mode == "SIM"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
