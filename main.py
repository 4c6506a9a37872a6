# main.py

import asyncio
import logging
import sys

from telegram.ext import Application

from config import BOT_TOKEN, CHAT_ID, SYMBOL, CAPITAL_USD, LOG_FILE, LOG_LEVEL
from data_fetcher import get_exchange
from journal import TradeJournal
from signal_generator import StrategyConfig
from telbot import TradingBot
from telegram_bot import TelegramNotifier
from trader import Trader

logger = logging.getLogger(__name__)


def build_application() -> Application:
    builder = Application.builder()
    builder.token(BOT_TOKEN)
    builder.connect_timeout(30.0)
    builder.read_timeout(30.0)
    builder.write_timeout(30.0)
    builder.pool_timeout(30.0)
    return builder.build()


async def run() -> int:
    application = build_application()
    notifier = TelegramNotifier(application.bot, CHAT_ID)
    bot = TradingBot(
        trader=Trader(get_exchange(), SYMBOL),
        notifier=notifier,
        journal=TradeJournal(LOG_FILE),
        config=StrategyConfig(),
        capital=CAPITAL_USD,
    )
    asyncio.get_running_loop().set_exception_handler(bot.handle_crash)

    try:
        return await bot.run_bot(application)
    except Exception as e:
        await notifier.send(f"💥 CRASH: {type(e).__name__}\n{e}")
        raise


def main():
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=LOG_LEVEL,
    )

    if not BOT_TOKEN:
        logger.error("❌ TELEGRAM_BOT_TOKEN is not set (environment or .env)")
        sys.exit(1)

    logger.info(f"🚀 Starting {SYMBOL} bot, log file {LOG_FILE}")
    try:
        code = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Bot stopped.")
        code = 0
    except Exception:
        logger.exception("Fatal error")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
