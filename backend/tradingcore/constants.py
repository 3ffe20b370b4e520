"""Message bus topics, command types and cache keys shared across services."""

# Fire-and-forget topics
MARKET_DATA_TOPIC = "market.data"
TRADING_SIGNALS_TOPIC = "trading.signals"
RISK_UPDATES_TOPIC = "risk.updates"
ORDER_UPDATES_TOPIC = "orders.updates"

# Request/reply topic (reply channel is f"{topic}.reply")
RISK_SIZE_REQUEST_TOPIC = "risk.calculate_size"

# Per-component command channels
STRATEGY_COMMANDS_TOPIC = "strategy.commands"
RISK_COMMANDS_TOPIC = "risk.commands"
EXECUTION_COMMANDS_TOPIC = "execution.commands"
COMMAND_TOPICS = (STRATEGY_COMMANDS_TOPIC, RISK_COMMANDS_TOPIC, EXECUTION_COMMANDS_TOPIC)

# Command / event types
START_TRADING = "START_TRADING"
STOP_TRADING = "STOP_TRADING"
PAUSE_TRADING = "PAUSE_TRADING"
CONFIG_UPDATE = "CONFIG_UPDATE"
EMERGENCY_STOP = "EMERGENCY_STOP"
MARKET_DATA_UPDATE = "MARKET_DATA_UPDATE"
TRADING_SIGNAL = "TRADING_SIGNAL"
CLOSE_ALL_POSITIONS = "CLOSE_ALL_POSITIONS"
RISK_UPDATE = "RISK_UPDATE"
RISK_LIMITS_UPDATED = "RISK_LIMITS_UPDATED"
ORDER_UPDATE = "ORDER_UPDATE"
CALCULATE_POSITION_SIZE = "CALCULATE_POSITION_SIZE"

# Risk alert types
DAILY_LOSS_LIMIT_EXCEEDED = "DAILY_LOSS_LIMIT_EXCEEDED"
MAX_DRAWDOWN_EXCEEDED = "MAX_DRAWDOWN_EXCEEDED"
HIGH_MARGIN_USAGE = "HIGH_MARGIN_USAGE"

# Cache keys and TTLs
MARKET_CACHE_PREFIX = "market:"
MARKET_CACHE_TTL = 30
RISK_METRICS_CACHE_KEY = "risk:metrics"
RISK_METRICS_CACHE_TTL = 60
POSITION_CACHE_PREFIX = "position:"
POSITION_CACHE_TTL = 60
SIM_EXECUTION_CACHE_PREFIX = "sim_execution:"
SIM_EXECUTION_CACHE_TTL = 86400
CLOSE_LOCK_PREFIX = "close:"

# Bounded in-memory windows
OBSERVATION_WINDOW_SIZE = 100
BALANCE_HISTORY_SIZE = 100
ORDER_HISTORY_SIZE = 100

# Aggregation thresholds
RESOLVE_CONFIDENCE_THRESHOLD = 50
PUBLISH_CONFIDENCE_THRESHOLD = 60
MISSING_WEIGHT_FALLBACK = 0.33
MIN_WINDOW_FOR_ANALYSIS = 10

# Persisted config keys
STRATEGIES_CONFIG_KEY = "strategies_config"
RISK_LIMIT_KEY_PREFIX = "risk_"
