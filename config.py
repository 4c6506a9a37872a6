# config.py

import os

from dotenv import load_dotenv

load_dotenv()

# Telegram Bot
BOT_TOKEN    = os.getenv("TELEGRAM_BOT_TOKEN", "")
CHAT_ID      = os.getenv("TELEGRAM_CHAT_ID", "")

# Exchange API (keys required for order placement)
EXCHANGE           = os.getenv("EXCHANGE", "binance")
BINANCE_API_KEY    = os.getenv("BINANCE_API_KEY", "")
BINANCE_API_SECRET = os.getenv("BINANCE_API_SECRET", "")

# Trading Settings
SYMBOL            = "BTC/USDT"
TIMEFRAME         = "5m"
LIMIT             = 300                        # number of candles to fetch

# Capital & Risk
CAPITAL_USD        = float(os.getenv("CAPITAL_USD", "10"))
RISK_PER_TRADE     = 0.1
COMPOUND_RATE      = 0.07                      # 7% compounding on winners
QUANTITY_PRECISION = 6

# Indicator Parameters
EMA_PERIODS        = (9, 21, 55)               # short, mid, long
RSI_PERIOD         = 14
MACD_FAST_PERIOD   = 12
MACD_SLOW_PERIOD   = 26
MACD_SIGNAL_PERIOD = 9
ATR_PERIOD         = 14
ADX_PERIOD         = 14
STOCH_PERIOD       = 14
STOCH_SIGNAL_PERIOD= 3
PSAR_STEP          = 0.02
PSAR_MAX           = 0.2
VOLUME_AVG_PERIOD  = 20

# Entry Rules
RSI_RANGE          = (48, 62)
MACD_SIGNAL_MARGIN = 1.1
VOLUME_SPIKE       = 2.2
ADX_THRESHOLD      = 28
PRICE_EMA_MARGIN   = 1.002
SESSION_HOURS      = (8, 22)                   # 8AM-10PM UTC

# Exit Rules
STOP_ATR_MULTIPLIER       = 1.2
TARGET_ATR_MULTIPLIER     = 2.5
TRAILING_ACTIVATION_RATIO = 1.5
TRAILING_STEP_SIZE        = 0.3
TRAILING_FLOOR_RATIO      = 0.8
TRAILING_MAX_DEVIATION    = 0.02

# Scheduling
TICK_SECONDS          = 60
MARKET_UPDATE_SECONDS = 300
ORDER_DELAY_SECONDS   = int(os.getenv("ORDER_DELAY_SECONDS", "0"))

# Trade Journal
LOG_FILE  = os.getenv("TRADE_LOG_FILE", os.path.join("logs", "trade-log.json"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
