# data_fetcher.py

import ccxt.async_support as ccxt
import pandas as pd
from config import EXCHANGE, BINANCE_API_KEY, BINANCE_API_SECRET

def get_exchange():
    exchange_class = getattr(ccxt, EXCHANGE)
    exchange = exchange_class({
        'apiKey': BINANCE_API_KEY,
        'secret': BINANCE_API_SECRET,
        'enableRateLimit': True,
    })
    return exchange

async def fetch_ohlcv(exchange, symbol: str, timeframe: str, limit: int) -> pd.DataFrame:
    ohlcv = await exchange.fetch_ohlcv(symbol, timeframe=timeframe, limit=limit)
    if not ohlcv:
        raise ValueError(f"No candles returned for {symbol} {timeframe}")
    df = pd.DataFrame(ohlcv, columns=['timestamp','open','high','low','close','volume'])
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
    df[['open','high','low','close','volume']] = df[['open','high','low','close','volume']].astype(float)
    return df.set_index('timestamp').sort_index()
