# telegram_bot.py

import logging
from datetime import datetime
from typing import Dict, List, Optional

from models import ExitReason, IndicatorSnapshot, Position, TradingContext

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Fire-and-forget sender for the configured chat."""

    def __init__(self, bot, chat_id: str):
        self.bot = bot
        self.chat_id = chat_id

    async def send(self, text: str, parse_mode: Optional[str] = None) -> bool:
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode=parse_mode)
            return True
        except Exception as e:
            logger.error(f"Telegram Error: {e}")
            return False


def _pct(value: float, base: float) -> float:
    return (value - base) / base * 100


def format_entry(position: Position, base_asset: str) -> str:
    return f"""🚀 *ENTRY SIGNAL*
Price: ${position.entry_price:.2f}
Size: {position.quantity} {base_asset} (${position.quantity * position.entry_price:.2f})
Stop: ${position.initial_stop:.2f} ({-_pct(position.initial_stop, position.entry_price):.2f}%)
Target: ${position.target:.2f} (+{_pct(position.target, position.entry_price):.2f}%)
ATR: ${position.atr:.2f}"""


def format_exit(reason: ExitReason, exit_price: float, pnl_pct: float,
                trailing_stop: Optional[float], capital: float) -> str:
    trailing = f"${trailing_stop:.2f}" if trailing_stop is not None else "Not activated"
    return f"""🏁 *EXIT SIGNAL ({reason.value})*
Price: ${exit_price:.2f}
PnL: {pnl_pct:.2f}%
Trailing Stop: {trailing}
New Capital: ${capital:.2f}"""


def format_trailing_activated(stop: float) -> str:
    return f"🔔 Trailing Stop Activated at ${stop:.2f}"


def format_pending(side: str, reason: str, delay: int) -> str:
    return (f"⏳ *{side.upper()} PENDING* ({reason})\n"
            f"Executing in {delay}s. Send /cancel to abort.")


def format_market_update(snapshot: IndicatorSnapshot, position: Optional[Position],
                         base_asset: str, now: datetime, timeframe: str) -> str:
    price = snapshot.price
    rsi = snapshot.last_rsi
    adx = snapshot.last_adx
    message = f"""📊 *{timeframe} Market Update*
🕒 {now.strftime('%H:%M:%S')} UTC
💰 Price: ${price:.2f}
📈 RSI: {rsi:.2f} {'🟢' if rsi > 50 else '🔴'}
📊 ADX: {adx:.2f} {'🔺' if adx > 25 else '🔻'}
💎 Volume: {snapshot.volume_ratio * 100:.2f}% of avg
"""
    if position:
        message += f"""⚖️ Position: {position.quantity} {base_asset} ({_pct(price, position.entry_price):.2f}%)
🎯 Target: ${position.target:.2f} (+{_pct(position.target, position.entry_price):.2f}%)
🛑 Stop: ${position.initial_stop:.2f} ({-_pct(position.initial_stop, position.entry_price):.2f}%)"""
    else:
        message += "🚫 No active position"
    return message


def format_status(context: TradingContext, price: float, base_asset: str) -> str:
    position = context.position
    if not position:
        return f"""🔴 *NO POSITION*
Capital: ${context.capital:.2f}
Last Price: ${price:.2f}"""

    lines = [
        "🟢 *IN POSITION*",
        f"Entry: ${position.entry_price:.2f}",
        f"Current: ${price:.2f} ({_pct(price, position.entry_price):.2f}%)",
        f"Stop: ${position.initial_stop:.2f}",
    ]
    if position.trailing_active:
        lines.append(f"Trailing: ${position.trailing_stop:.2f}")
    lines += [
        f"Size: {position.quantity} {base_asset} (${position.quantity * price:.2f})",
        f"Capital: ${context.capital:.2f}",
    ]
    return "\n".join(lines)


def format_logs(records: List[Dict], limit: int, base_asset: str) -> str:
    if not records:
        return "No trades logged yet."

    blocks = []
    for log in records:
        when = datetime.fromisoformat(log['timestamp']).strftime('%Y-%m-%d %H:%M:%S')
        lines = [
            f"📅 {when}",
            f"{'🟢' if log.get('action') == 'ENTRY' else '🔴'} {log.get('action')} "
            f"{log.get('quantity')} {base_asset} @ ${log.get('price', 0):.2f}",
        ]
        if log.get('pnl') is not None:
            lines.append(f"📈 PnL: {log['pnl']:.2f}%")
        if log.get('reason'):
            lines.append(f"⚡ Reason: {log['reason']}")
        if log.get('trailing_stop_used'):
            lines.append("🎯 Trailing Stop Used")
        blocks.append("\n".join(lines))

    return f"📜 *Last {limit} Trades*\n\n" + "\n\n".join(blocks)
