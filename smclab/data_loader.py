"""
Data loading and conversion between candle lists and DataFrames
"""
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import ValidationError
from .models import Candle

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {'timestamp', 'open', 'high', 'low', 'close'}

# Numeric timestamps above this are milliseconds
_MS_THRESHOLD = 1e11


def normalize_timestamps(series: pd.Series) -> pd.Series:
    """Convert ms/s epoch numbers or date strings to unix seconds"""
    if pd.api.types.is_datetime64_any_dtype(series):
        parsed = pd.to_datetime(series, utc=True)
    elif pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
        unit = 'ms' if series.max() > _MS_THRESHOLD else 's'
        parsed = pd.to_datetime(series, unit=unit, utc=True)
    else:
        parsed = pd.to_datetime(series, utc=True, errors='coerce')

    seconds = pd.Series(np.nan, index=series.index)
    valid = parsed.notna()
    seconds[valid] = parsed[valid].map(lambda ts: ts.timestamp())
    return seconds


def load_csv(path: str) -> pd.DataFrame:
    """
    Load an OHLC(V) CSV file

    Column names are matched case-insensitively. Rows with unparseable
    timestamps or an invalid OHLC envelope are dropped; duplicate
    timestamps keep the last row.

    Args:
        path: Path to CSV file

    Returns:
        DataFrame with timestamp (unix seconds), open, high, low, close, volume

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If required columns are missing or nothing usable remains
    """
    if not Path(path).exists():
        raise FileNotFoundError(f"CSV file not found: {path}")

    df = pd.read_csv(path)
    df.columns = [c.strip().lower() for c in df.columns]
    if 'timestamp' not in df.columns and 'time' in df.columns:
        df = df.rename(columns={'time': 'timestamp'})

    missing_columns = REQUIRED_COLUMNS - set(df.columns)
    if missing_columns:
        raise ValidationError(f"CSV must contain columns {sorted(REQUIRED_COLUMNS)}; "
                              f"missing {sorted(missing_columns)}")

    if 'volume' not in df.columns:
        df['volume'] = np.nan

    df['timestamp'] = normalize_timestamps(df['timestamp'])
    df = df.dropna(subset=['timestamp', 'open', 'high', 'low', 'close'])
    df['timestamp'] = df['timestamp'].astype('int64')

    invalid_ohlc = (
        (df['high'] < df['low']) |
        (df['high'] < df['open']) |
        (df['high'] < df['close']) |
        (df['low'] > df['open']) |
        (df['low'] > df['close'])
    )
    if invalid_ohlc.any():
        logger.warning(f"Dropping {int(invalid_ohlc.sum())} rows with invalid OHLC data from {path}")
        df = df[~invalid_ohlc]

    df = df.sort_values('timestamp', kind='stable').drop_duplicates('timestamp', keep='last').reset_index(drop=True)
    if df.empty:
        raise ValidationError(f"No usable candles in {path}")

    logger.info(f"Loaded {len(df)} candles from {path}")
    return df[['timestamp', 'open', 'high', 'low', 'close', 'volume']]


def candles_from_dataframe(df: pd.DataFrame) -> List[Candle]:
    """Build candles from a frame with timestamp (unix seconds) and OHLC(V) columns"""
    has_volume = 'volume' in df.columns
    candles = []
    for row in df.itertuples(index=False):
        volume = getattr(row, 'volume') if has_volume else None
        candles.append(Candle(
            time=int(row.timestamp),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=None if volume is None or pd.isna(volume) else float(volume)
        ))
    return candles


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        [(c.time, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=['timestamp', 'open', 'high', 'low', 'close', 'volume']
    )


def load_candles(path: str) -> List[Candle]:
    return candles_from_dataframe(load_csv(path))


def prepare_data(ltf_path: str, htf_path: Optional[str] = None) -> Tuple[List[Candle], Optional[List[Candle]]]:
    """
    Load trading-timeframe candles and, optionally, higher-timeframe candles

    Returns:
        Tuple of (ltf_candles, htf_candles or None)
    """
    ltf = load_candles(ltf_path)
    if htf_path is None:
        return ltf, None

    htf = load_candles(htf_path)
    if len(htf) > len(ltf):
        logger.warning("HTF has more candles than LTF. Check your timeframes.")
    if htf[0].time > ltf[-1].time or htf[-1].time < ltf[0].time:
        logger.warning("No time overlap between LTF and HTF data")
    return ltf, htf
