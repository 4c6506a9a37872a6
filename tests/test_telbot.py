import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import Chat, Message, Update

from journal import TradeJournal
from models import ExitReason
from signal_generator import StrategyConfig, open_position, position_size
from telbot import TradingBot
from tests.test_signal_generator import make_snapshot
from trader import Fill

CONFIG = StrategyConfig()


def make_trader(buy_price: float = 101.5, sell_price: float = 106.0, free: float = 0.0095):
    trader = MagicMock()
    trader.symbol = "BTC/USDT"
    trader.base_asset = "BTC"
    trader.market_buy = AsyncMock(side_effect=lambda qty: Fill(price=buy_price, quantity=qty))
    trader.market_sell = AsyncMock(side_effect=lambda qty: Fill(price=sell_price, quantity=qty))
    trader.free_balance = AsyncMock(return_value=free)
    trader.close = AsyncMock()
    return trader


def make_bot(tmp_path, snapshot, hour: int = 14, trader=None, **kwargs) -> TradingBot:
    notifier = MagicMock()
    notifier.chat_id = "12345"
    notifier.send = AsyncMock(return_value=True)
    bot = TradingBot(
        trader=trader or make_trader(),
        notifier=notifier,
        journal=TradeJournal(str(tmp_path / "trade-log.json")),
        config=CONFIG,
        capital=10.0,
        clock=lambda: datetime(2024, 5, 1, hour, 0, tzinfo=timezone.utc),
        **kwargs,
    )
    bot.get_indicators = AsyncMock(return_value=snapshot)
    return bot


def sent_messages(bot):
    return [c.args[0] for c in bot.notifier.send.await_args_list]


def test_tick_enters_and_journals(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    asyncio.run(bot.check_market())

    expected_qty = position_size(10.0, 101.5, CONFIG)
    bot.trader.market_buy.assert_awaited_once_with(expected_qty)
    position = bot.context.position
    assert position.entry_price == 101.5
    assert position.initial_stop == pytest.approx(99.1)
    assert position.target == pytest.approx(106.5)

    record = bot.journal.read()[-1]
    assert record["action"] == "ENTRY"
    assert record["quantity"] == expected_qty
    assert any("ENTRY SIGNAL" in m for m in sent_messages(bot))


def test_tick_outside_session_does_not_enter(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(), hour=23)
    asyncio.run(bot.check_market())

    bot.trader.market_buy.assert_not_awaited()
    assert bot.context.position is None
    # market updates are muted off-hours too
    assert sent_messages(bot) == []


def test_take_profit_exit_compounds_capital(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(price=106.0, rsi=70.0))
    bot.context.position = open_position(100.0, 0.01, 2.0, CONFIG)
    asyncio.run(bot.check_market())

    bot.trader.market_sell.assert_awaited_once_with(0.0095)
    assert bot.context.position is None
    assert bot.context.capital == pytest.approx(10.7)

    record = bot.journal.read()[-1]
    assert record["action"] == "EXIT"
    assert record["reason"] == ExitReason.TAKE_PROFIT.value
    assert record["pnl"] == pytest.approx(6.0)
    assert record["trailing_stop_used"] is True
    assert any("EXIT SIGNAL (TAKE PROFIT)" in m for m in sent_messages(bot))


def test_losing_exit_keeps_capital(tmp_path):
    trader = make_trader(sell_price=97.0, free=0.0)
    bot = make_bot(tmp_path, make_snapshot(price=97.0, rsi=70.0), trader=trader)
    bot.context.position = open_position(100.0, 0.01, 2.0, CONFIG)
    asyncio.run(bot.check_market())

    # no free balance reported, sells the recorded quantity
    trader.market_sell.assert_awaited_once_with(0.01)
    assert bot.context.capital == 10.0
    assert bot.journal.read()[-1]["reason"] == "HARD STOP"


def test_trailing_activation_is_reported(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(price=100.8, rsi=70.0))
    bot.context.position = open_position(100.0, 0.01, 0.5, CONFIG)
    asyncio.run(bot.check_market())

    assert bot.context.position.trailing_active
    assert any("Trailing Stop Activated" in m for m in sent_messages(bot))
    bot.trader.market_sell.assert_not_awaited()


def test_tick_error_is_reported_not_raised(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    bot.get_indicators = AsyncMock(side_effect=RuntimeError("exchange down"))
    asyncio.run(bot.check_market())

    assert sent_messages(bot) == ["⚠️ SYSTEM ERROR: exchange down"]


def test_failed_entry_leaves_no_position(tmp_path):
    trader = make_trader()
    trader.market_buy = AsyncMock(side_effect=RuntimeError("insufficient balance"))
    bot = make_bot(tmp_path, make_snapshot(), trader=trader)
    asyncio.run(bot.check_market())

    assert bot.context.position is None
    assert "❌ ENTRY FAILED: insufficient balance" in sent_messages(bot)
    assert bot.journal.read() == []


def test_failed_exit_keeps_position(tmp_path):
    trader = make_trader()
    trader.market_sell = AsyncMock(side_effect=RuntimeError("rejected"))
    bot = make_bot(tmp_path, make_snapshot(price=106.0, rsi=70.0), trader=trader)
    position = open_position(100.0, 0.01, 2.0, CONFIG)
    bot.context.position = position
    asyncio.run(bot.check_market())

    assert bot.context.position is position
    assert bot.context.capital == 10.0
    assert "❌ EXIT FAILED: rejected" in sent_messages(bot)


def test_market_update_respects_interval(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(rsi=70.0))

    async def two_ticks():
        await bot.check_market()
        await bot.check_market()

    asyncio.run(two_ticks())
    updates = [m for m in sent_messages(bot) if "Market Update" in m]
    assert len(updates) == 1


def test_delayed_entry_is_not_submitted_twice(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(), order_delay=0.05)

    async def scenario():
        await bot.check_market()
        await bot.check_market()
        assert bot.pending.is_pending("buy")
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    bot.trader.market_buy.assert_awaited_once()
    assert bot.context.position is not None
    assert not bot.pending.is_pending("buy")
    assert any("BUY PENDING" in m for m in sent_messages(bot))


def test_cancelled_delayed_entry_never_executes(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(), order_delay=0.05)

    async def scenario():
        await bot.check_market()
        assert len(bot.pending.cancel()) == 1
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    bot.trader.market_buy.assert_not_awaited()
    assert bot.context.position is None


def make_update():
    update = MagicMock()
    update.message.reply_text = AsyncMock()
    return update


def test_logs_command_lists_newest_first(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    bot.journal.append({"action": "ENTRY", "price": 100.0, "quantity": 0.01})
    bot.journal.append({"action": "EXIT", "price": 105.0, "quantity": 0.01,
                        "pnl": 5.0, "reason": "TAKE PROFIT", "trailing_stop_used": False})
    update = make_update()
    context = MagicMock(args=["2"])

    asyncio.run(bot.logs_command(update, context))
    text = update.message.reply_text.await_args.args[0]
    assert text.startswith("📜 *Last 2 Trades*")
    assert text.index("EXIT") < text.index("ENTRY")
    assert "Reason: TAKE PROFIT" in text


def test_logs_command_with_empty_journal(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    update = make_update()

    asyncio.run(bot.logs_command(update, MagicMock(args=[])))
    assert update.message.reply_text.await_args.args[0] == "No trades logged yet."


def test_status_command_in_position(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(price=101.0))
    bot.context.position = open_position(100.0, 0.01, 2.0, CONFIG)
    bot.context.position.trailing_stop = 101.6
    update = make_update()

    asyncio.run(bot.status_command(update, MagicMock(args=[])))
    text = update.message.reply_text.await_args.args[0]
    assert "IN POSITION" in text
    assert "Current: $101.00 (1.00%)" in text
    assert "Trailing: $101.60" in text


def test_status_command_flat(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(price=101.0))
    update = make_update()

    asyncio.run(bot.status_command(update, MagicMock(args=[])))
    text = update.message.reply_text.await_args.args[0]
    assert "NO POSITION" in text
    assert "Capital: $10.00" in text


def test_cancel_command_without_pending(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    update = make_update()

    asyncio.run(bot.cancel_command(update, MagicMock(args=[])))
    assert update.message.reply_text.await_args.args[0] == "ℹ️ No pending orders"


def test_exit_sells_whole_quantity_already_on_precision_grid(tmp_path):
    trader = make_trader(sell_price=106.0, free=0.000249)
    bot = make_bot(tmp_path, make_snapshot(price=106.0, rsi=70.0), trader=trader)
    bot.context.position = open_position(100.0, 0.000249, 2.0, CONFIG)
    asyncio.run(bot.check_market())

    trader.market_sell.assert_awaited_once_with(0.000249)
    assert bot.journal.read()[-1]["quantity"] == 0.000249


def test_delayed_exit_is_submitted_once(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(price=106.0, rsi=70.0), order_delay=0.05)
    bot.context.position = open_position(100.0, 0.01, 2.0, CONFIG)

    async def scenario():
        await bot.check_market()
        await bot.check_market()
        assert bot.pending.is_pending("sell")
        assert bot.context.position is not None
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    bot.trader.market_sell.assert_awaited_once_with(0.0095)
    assert bot.context.position is None
    assert bot.context.capital == pytest.approx(10.7)
    assert not bot.pending.is_pending("sell")
    assert any("SELL PENDING" in m for m in sent_messages(bot))


def test_cancel_command_aborts_pending_exit(tmp_path):
    bot = make_bot(tmp_path, make_snapshot(price=106.0, rsi=70.0), order_delay=0.05)
    position = open_position(100.0, 0.01, 2.0, CONFIG)
    bot.context.position = position
    update = make_update()

    async def scenario():
        await bot.check_market()
        await bot.cancel_command(update, MagicMock(args=[]))
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    assert update.message.reply_text.await_args.args[0] == "🛑 Cancelled: SELL (TAKE PROFIT)"
    bot.trader.market_sell.assert_not_awaited()
    assert bot.context.position is position
    assert bot.journal.read() == []


def test_logs_command_zero_still_shows_latest(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    bot.journal.append({"action": "ENTRY", "price": 100.0, "quantity": 0.01})
    update = make_update()

    asyncio.run(bot.logs_command(update, MagicMock(args=["0"])))
    text = update.message.reply_text.await_args.args[0]
    assert text.startswith("📜 *Last 1 Trades*")
    assert "ENTRY 0.01 BTC @ $100.00" in text


def make_command(chat_id: int, text: str = "/cancel") -> Update:
    message = Message(
        message_id=1,
        date=datetime(2024, 5, 1, 14, 0, tzinfo=timezone.utc),
        chat=Chat(id=chat_id, type=Chat.PRIVATE),
        text=text,
    )
    return Update(update_id=1, message=message)


def registered_handlers(bot):
    application = MagicMock()
    bot.setup_handlers(application)
    return [c.args[0] for c in application.add_handler.call_args_list]


def test_commands_are_limited_to_configured_chat(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    handlers = registered_handlers(bot)

    assert {cmd for h in handlers for cmd in h.commands} == {"start", "help", "status", "logs", "cancel"}
    for handler in handlers:
        assert handler.filters.check_update(make_command(12345))
        assert not handler.filters.check_update(make_command(999))


def test_cancel_from_other_chat_keeps_pending_order(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    order = bot.pending.reserve("sell", "EMA CROSS")
    cancel = next(h for h in registered_handlers(bot) if "cancel" in h.commands)

    async def dispatch(update):
        if cancel.filters.check_update(update):
            await cancel.callback(update, MagicMock(args=[]))

    asyncio.run(dispatch(make_command(999)))
    assert bot.pending.is_pending("sell")
    assert not order.cancelled


def test_chat_filter_accepts_channel_username(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    bot.notifier.chat_id = "@pographel"
    assert bot.chat_filter().usernames == frozenset({"pographel"})


def test_crash_with_exception_reports_and_stops(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())

    async def scenario():
        bot._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        bot.handle_crash(loop, {"message": "Task exception", "exception": RuntimeError("kaput")})
        await asyncio.wait_for(bot._stop_event.wait(), 1)

    asyncio.run(scenario())
    assert bot.exit_code == 1
    message = sent_messages(bot)[0]
    assert message.startswith("💥 CRASH: Uncaught Exception")
    assert "RuntimeError: kaput" in message


def test_loop_warning_without_exception_does_not_stop(tmp_path):
    bot = make_bot(tmp_path, make_snapshot())
    bot._stop_event = asyncio.Event()
    loop = MagicMock()
    context = {"message": "Unclosed client session"}

    bot.handle_crash(loop, context)

    loop.default_exception_handler.assert_called_once_with(context)
    loop.create_task.assert_not_called()
    assert bot.exit_code == 0
    assert not bot._stop_event.is_set()
