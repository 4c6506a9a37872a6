import asyncio
import logging
import signal
import traceback
from datetime import datetime, timezone
from typing import Callable, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes, filters

from config import TIMEFRAME, LIMIT, TICK_SECONDS, MARKET_UPDATE_SECONDS, ORDER_DELAY_SECONDS
from data_fetcher import fetch_ohlcv
from indicators import build_snapshot
from journal import TradeJournal
from models import EntryDecision, ExitReason, IndicatorSnapshot, TradingContext
from signal_generator import (
    StrategyConfig, apply_compounding, evaluate_entry, evaluate_exit, in_session,
    open_position, pnl_percent, position_size, round_down,
)
from telegram_bot import (
    TelegramNotifier, format_entry, format_exit, format_logs, format_market_update,
    format_pending, format_status, format_trailing_activated,
)
from trader import PendingOrders, Trader

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TradingBot:
    def __init__(self, trader: Trader, notifier: TelegramNotifier, journal: TradeJournal,
                 config: StrategyConfig, capital: float,
                 timeframe: str = TIMEFRAME, limit: int = LIMIT,
                 order_delay: int = ORDER_DELAY_SECONDS,
                 market_update_seconds: int = MARKET_UPDATE_SECONDS,
                 clock: Callable[[], datetime] = utc_now):
        self.trader = trader
        self.notifier = notifier
        self.journal = journal
        self.config = config
        self.context = TradingContext(capital=capital)
        self.timeframe = timeframe
        self.limit = limit
        self.order_delay = order_delay
        self.market_update_seconds = market_update_seconds
        self.clock = clock
        self.pending = PendingOrders()
        self.exit_code = 0
        self._tasks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def base_asset(self) -> str:
        return self.trader.base_asset

    async def get_indicators(self) -> IndicatorSnapshot:
        df = await fetch_ohlcv(self.trader.exchange, self.trader.symbol, self.timeframe, self.limit)
        return build_snapshot(df, self.config.ema_periods)

    # ===== Main Loop =====

    async def check_market(self):
        """One polling tick. Errors end the tick and are reported to the chat."""
        try:
            snapshot = await self.get_indicators()
            now = self.clock()

            if now.timestamp() - self.context.last_update_time >= self.market_update_seconds:
                await self.send_market_update(snapshot, now)
                self.context.last_update_time = now.timestamp()

            position = self.context.position
            if position:
                reason, activated = evaluate_exit(snapshot, position, self.config)
                if activated:
                    logger.info(f"Trailing stop armed at {position.trailing_stop:.2f}")
                    await self.notifier.send(format_trailing_activated(position.trailing_stop))
                if reason:
                    await self.submit_exit(reason)

            if self.context.position is None:
                decision = evaluate_entry(snapshot, now.hour, self.config)
                if decision.enter:
                    await self.submit_entry(snapshot, decision)
                else:
                    logger.debug(f"No entry, failed rules: {', '.join(decision.failed)}")

        except Exception as e:
            logger.exception(f"Main Loop Error: {e}")
            await self.notifier.send(f"⚠️ SYSTEM ERROR: {e}")

    async def send_market_update(self, snapshot: IndicatorSnapshot, now: datetime):
        if not in_session(now.hour, self.config):
            return
        message = format_market_update(snapshot, self.context.position, self.base_asset,
                                       now, self.timeframe)
        await self.notifier.send(message, "Markdown")

    # ===== Order Submission =====

    async def submit_entry(self, snapshot: IndicatorSnapshot, decision: EntryDecision):
        price, atr = snapshot.price, decision.atr
        await self._submit('buy', 'ENTRY', lambda: self.execute_entry(price, atr))

    async def submit_exit(self, reason: ExitReason):
        await self._submit('sell', reason.value, lambda: self.execute_exit(reason))

    async def _submit(self, side: str, reason: str, action):
        if self.order_delay <= 0:
            await action()
            return

        order = self.pending.reserve(side, reason)
        if order is None:
            logger.info(f"{side.upper()} already pending, ignoring {reason}")
            return

        await self.notifier.send(format_pending(side, reason, self.order_delay), "Markdown")
        task = asyncio.create_task(self._run_delayed(order, action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_delayed(self, order, action):
        try:
            await asyncio.sleep(self.order_delay)
            if order.cancelled:
                logger.info(f"Pending {order.side} ({order.reason}) cancelled")
                return
            await action()
        finally:
            self.pending.complete(order)

    async def execute_entry(self, price: float, atr: float):
        if self.context.position is not None:
            logger.warning("Entry skipped, position already open")
            return
        try:
            quantity = position_size(self.context.capital, price, self.config)
            fill = await self.trader.market_buy(quantity)
            position = open_position(fill.price, fill.quantity, atr, self.config)
            self.context.position = position

            self.journal.append({
                'action': 'ENTRY',
                'price': position.entry_price,
                'quantity': position.quantity,
                'stop': position.initial_stop,
                'target': position.target,
                'capital': self.context.capital,
            })
            logger.info(f"Entered {position.quantity} @ {position.entry_price:.2f}")
            await self.notifier.send(format_entry(position, self.base_asset), "Markdown")

        except Exception as e:
            logger.error(f"Entry Error: {e}")
            await self.notifier.send(f"❌ ENTRY FAILED: {e}")

    async def execute_exit(self, reason: ExitReason):
        position = self.context.position
        if position is None:
            logger.warning(f"Exit {reason.value} skipped, no open position")
            return
        try:
            free = await self.trader.free_balance()
            quantity = position.quantity
            if free > 0:
                quantity = round_down(min(position.quantity, free), self.config.quantity_precision)

            fill = await self.trader.market_sell(quantity)
            pnl = pnl_percent(position.entry_price, fill.price)
            self.context.capital = apply_compounding(self.context.capital, pnl, self.config)
            self.context.position = None

            self.journal.append({
                'action': 'EXIT',
                'price': fill.price,
                'quantity': fill.quantity,
                'pnl': pnl,
                'reason': reason.value,
                'trailing_stop_used': position.trailing_active,
                'capital': self.context.capital,
            })
            logger.info(f"Exited ({reason.value}) @ {fill.price:.2f}, PnL {pnl:.2f}%")
            await self.notifier.send(
                format_exit(reason, fill.price, pnl, position.trailing_stop, self.context.capital),
                "Markdown",
            )

        except Exception as e:
            logger.error(f"Exit Error: {e}")
            await self.notifier.send(f"❌ EXIT FAILED: {e}")

    # ===== Telegram Commands =====

    async def start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start and /help"""
        message = f"""
🤖 *{self.trader.symbol} {self.timeframe} Bot*

Available commands:
/status - Current position and capital
/logs [N] - Last N journaled trades (default 5)
/cancel - Cancel pending delayed orders
/help - Show this help
        """
        await update.message.reply_text(message, parse_mode='Markdown')

    async def status_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        try:
            snapshot = await self.get_indicators()
        except Exception as e:
            logger.error(f"Status Error: {e}")
            await update.message.reply_text(f"❌ Could not fetch market data: {e}")
            return
        message = format_status(self.context, snapshot.price, self.base_asset)
        await update.message.reply_text(message, parse_mode='Markdown')

    async def logs_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        limit = 5
        if context.args and context.args[0].isdigit():
            limit = max(1, int(context.args[0]))
        records = self.journal.recent(limit)
        message = format_logs(records, limit, self.base_asset)
        await update.message.reply_text(message, parse_mode='Markdown' if records else None)

    async def cancel_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        cancelled = self.pending.cancel()
        if cancelled:
            names = ", ".join(f"{o.side.upper()} ({o.reason})" for o in cancelled)
            await update.message.reply_text(f"🛑 Cancelled: {names}")
        else:
            await update.message.reply_text("ℹ️ No pending orders")

    def chat_filter(self) -> filters.Chat:
        """Commands are only answered in the configured notification chat."""
        chat_id = str(self.notifier.chat_id).strip()
        if chat_id.lstrip("-").isdigit():
            return filters.Chat(chat_id=int(chat_id))
        return filters.Chat(username=chat_id.lstrip("@"))

    def setup_handlers(self, application: Application):
        owner_chat = self.chat_filter()
        commands = [
            ("start", self.start_command),
            ("help", self.start_command),
            ("status", self.status_command),
            ("logs", self.logs_command),
            ("cancel", self.cancel_command),
        ]
        for name, callback in commands:
            application.add_handler(CommandHandler(name, callback, filters=owner_chat))

    # ===== Lifecycle =====

    async def test_exchange_connection(self) -> bool:
        try:
            server_time = await self.trader.server_time()
            when = datetime.fromtimestamp(server_time / 1000, tz=timezone.utc)
            await self.notifier.send(f"✅ Exchange API Connected\nServer Time: {when:%Y-%m-%d %H:%M:%S} UTC")
            return True
        except Exception as e:
            logger.error(f"❌ Exchange connection failed: {e}")
            await self.notifier.send(f"❌ Exchange Connection Failed: {e}")
            return False

    def handle_crash(self, loop: asyncio.AbstractEventLoop, context: dict):
        """asyncio exception handler: report, then stop with a failing exit code.

        Contexts without an exception (unclosed sessions, destroyed tasks) are
        warnings and go to the loop's default handler.
        """
        exc = context.get('exception')
        if exc is None:
            loop.default_exception_handler(context)
            return
        details = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        logger.error(f"Uncaught Exception: {details}")
        self.exit_code = 1
        loop.create_task(self._report_crash(details))

    async def _report_crash(self, details: str):
        await self.notifier.send(f"💥 CRASH: Uncaught Exception\n{details[-3500:]}")
        self.stop()

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_bot(self, application: Application) -> int:
        self._stop_event = asyncio.Event()
        await self.notifier.send("🤖 *Bot Starting...*", "Markdown")

        if not await self.test_exchange_connection():
            await self.trader.close()
            return 1

        self.setup_handlers(application)
        logger.info("Initializing bot...")
        await application.initialize()
        await application.start()
        await application.updater.start_polling(drop_pending_updates=True)

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(self.check_market, 'interval', seconds=TICK_SECONDS,
                          max_instances=1, coalesce=True, id='check_market')

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

        try:
            await self.check_market()
            scheduler.start()
            await self.notifier.send(
                f"🚀 *Bot Activated - Monitoring {self.trader.symbol} {self.timeframe}*\n"
                f"💰 Starting Capital: ${self.context.capital:.2f}",
                "Markdown",
            )
            logger.info("✅ Bot is running")
            await self._stop_event.wait()
        finally:
            await self.shutdown_bot(application, scheduler)
        return self.exit_code

    async def shutdown_bot(self, application: Application, scheduler: AsyncIOScheduler):
        logger.info("Shutting down bot...")
        if scheduler.running:
            scheduler.shutdown(wait=False)
        self.pending.cancel()
        for task in list(self._tasks):
            task.cancel()
        try:
            if application.updater and application.updater.running:
                await application.updater.stop()
            if application.running:
                await application.stop()
            await application.shutdown()
        finally:
            await self.trader.close()
        logger.info("Bot shut down successfully")
