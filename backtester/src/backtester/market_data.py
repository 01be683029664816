"""
Historical market data for backtests.

This module turns a dataset description into a ``MarketDataAligner``: the
time axis the simulation loop iterates over.  Candles come from one of two
sources:

* a bulk CSV blob (read once and parsed fully with pandas), or
* a range query against a candle store.

Both produce ``Candle`` records.  The aligner merges every instrument's
series onto the sorted union of their timestamps and keeps one cursor per
instrument so that strategies only ever see history up to "now".

CSV format requirements:

* a timestamp column (``timestamp``, ``time``, ``date`` or ``datetime``)
  holding ISO 8601 strings, unix seconds or unix milliseconds;
* a close column (``close``, ``c`` or ``price``).

Optional columns are ``open``/``high``/``low`` (default to close),
``volume`` (defaults to 0) and a symbol column (``symbol``, ``coin``,
``instrument``, ``asset`` or ``ticker``).  Header names are matched
case-insensitively.  Rows without a symbol belong to the first instrument
of the universe.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import io
import logging
import posixpath
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import pandas as pd
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .exceptions import DataLoadFailed, InstrumentUniverseUnresolved
from .models import Candle, MarketDataset, to_utc

logger = logging.getLogger(__name__)

MAX_CSV_FILE_SIZE_BYTES = 100 * 1024 * 1024
DEFAULT_MAX_INSTRUMENTS = 50

# Unix timestamp bounds used to tell seconds from milliseconds (2000-01-01 .. 2100-01-01).
MIN_UNIX_SECONDS = 946_684_800
MAX_UNIX_SECONDS = 4_102_444_800
MIN_UNIX_MILLISECONDS = 946_684_800_000

COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "timestamp": ("timestamp", "time", "date", "datetime"),
    "open": ("open", "o"),
    "high": ("high", "h"),
    "low": ("low", "l"),
    "close": ("close", "c", "price"),
    "volume": ("volume", "vol", "v"),
    "instrument": ("symbol", "coin", "instrument", "asset", "ticker"),
}

QUOTE_SUFFIXES = ("-USDT", "-USDC", "-USD", "/USDT", "/USDC", "/USD", "USDT", "USDC", "USD")


class MarketDataAligner:
    """Time-aligned view over several instruments' candle series."""

    def __init__(self, candles: Iterable[Candle], max_lookback: Optional[int] = None) -> None:
        by_instrument: Dict[str, Dict[dt.datetime, Candle]] = {}
        for candle in candles:
            # a later duplicate for the same timestamp replaces the earlier one
            by_instrument.setdefault(candle.instrument, {})[to_utc(candle.timestamp)] = candle
        self._series: Dict[str, List[Candle]] = {
            inst: [rows[ts] for ts in sorted(rows)] for inst, rows in sorted(by_instrument.items())
        }
        self.timestamps: List[dt.datetime] = sorted(
            {to_utc(c.timestamp) for series in self._series.values() for c in series}
        )
        if not self.timestamps:
            raise DataLoadFailed("No market data available for the requested instruments and range")
        self.max_lookback = max_lookback
        self._cursors: Dict[str, int] = {inst: -1 for inst in self._series}
        self._position = -1

    @property
    def instruments(self) -> List[str]:
        return list(self._series)

    @property
    def position(self) -> int:
        return self._position

    def __len__(self) -> int:
        return len(self.timestamps)

    def advance(self, index: int) -> dt.datetime:
        """Move every cursor forward to axis position ``index`` and return its timestamp."""
        if index < self._position:
            raise ValueError(f"Cannot move cursors backwards from {self._position} to {index}")
        now = self.timestamps[index]
        for inst, series in self._series.items():
            cursor = self._cursors[inst]
            while cursor + 1 < len(series) and to_utc(series[cursor + 1].timestamp) <= now:
                cursor += 1
            self._cursors[inst] = cursor
        self._position = index
        return now

    def history(self, instrument: str) -> List[Candle]:
        """Candles of ``instrument`` visible at the current position, oldest first."""
        cursor = self._cursors.get(instrument, -1)
        if cursor < 0:
            return []
        start = 0
        if self.max_lookback is not None:
            start = max(0, cursor + 1 - self.max_lookback)
        return self._series[instrument][start : cursor + 1]

    def candle(self, instrument: str) -> Optional[Candle]:
        cursor = self._cursors.get(instrument, -1)
        if cursor < 0:
            return None
        return self._series[instrument][cursor]

    def price(self, instrument: str) -> Optional[float]:
        candle = self.candle(instrument)
        return candle.close if candle is not None else None

    def prices(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for inst in self._series:
            candle = self.candle(inst)
            if candle is not None:
                out[inst] = candle.close
        return out


def _find_column(columns: Dict[str, str], field: str) -> Optional[str]:
    for alias in COLUMN_ALIASES[field]:
        if alias in columns:
            return columns[alias]
    return None


def _parse_timestamps(raw: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(raw, errors="coerce")
    seconds = numeric.where((numeric > MIN_UNIX_SECONDS) & (numeric < MAX_UNIX_SECONDS))
    millis = numeric.where(numeric > MIN_UNIX_MILLISECONDS)
    parsed_seconds = pd.to_datetime(seconds, unit="s", utc=True)
    parsed_millis = pd.to_datetime(millis, unit="ms", utc=True)
    parsed_iso = pd.to_datetime(raw.where(numeric.isna()), utc=True, errors="coerce", format="ISO8601")
    return parsed_seconds.combine_first(parsed_millis).combine_first(parsed_iso)


def read_candles_csv(
    source: Union[str, Path, bytes, io.IOBase],
    instrument_universe: Sequence[str] = (),
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
) -> List[Candle]:
    """Parse a CSV blob into candles.

    :param source: file path, raw bytes or a file-like object
    :param instrument_universe: instruments to keep; the first one is the
        default for rows without a symbol column
    :param start: inclusive lower bound on the candle timestamp
    :param end: inclusive upper bound on the candle timestamp
    :return: candles sorted by timestamp (then instrument)
    :raises DataLoadFailed: if the CSV lacks required columns or has no valid rows
    """
    if isinstance(source, bytes):
        source = io.BytesIO(source)
    try:
        df = pd.read_csv(source, dtype=str, skipinitialspace=True)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        raise DataLoadFailed(f"Unable to parse market data CSV: {exc}") from exc

    columns = {str(c).strip().lower(): c for c in df.columns}
    ts_col = _find_column(columns, "timestamp")
    close_col = _find_column(columns, "close")
    if ts_col is None:
        raise DataLoadFailed("CSV must have a timestamp column (timestamp, time, date, or datetime)")
    if close_col is None:
        raise DataLoadFailed("CSV must have a close/price column")

    universe = [s.strip().upper() for s in instrument_universe if s and s.strip()]
    default_instrument = universe[0] if universe else "UNKNOWN"

    frame = pd.DataFrame({"timestamp": _parse_timestamps(df[ts_col])})
    frame["close"] = pd.to_numeric(df[close_col], errors="coerce")
    for field in ("open", "high", "low"):
        col = _find_column(columns, field)
        values = pd.to_numeric(df[col], errors="coerce") if col else pd.Series(float("nan"), index=df.index)
        frame[field] = values.fillna(frame["close"])
    vol_col = _find_column(columns, "volume")
    volume = pd.to_numeric(df[vol_col], errors="coerce") if vol_col else pd.Series(0.0, index=df.index)
    frame["volume"] = volume.fillna(0.0)
    sym_col = _find_column(columns, "instrument")
    if sym_col is not None:
        frame["instrument"] = df[sym_col].fillna(default_instrument).str.strip().str.upper()
    else:
        frame["instrument"] = default_instrument

    invalid = frame["timestamp"].isna() | frame["close"].isna()
    if invalid.any():
        logger.warning("Dropped %d invalid CSV rows out of %d", int(invalid.sum()), len(frame))
    frame = frame[~invalid]
    if frame.empty:
        raise DataLoadFailed("No valid data rows found in CSV")

    if start is not None:
        frame = frame[frame["timestamp"] >= pd.Timestamp(to_utc(start))]
    if end is not None:
        frame = frame[frame["timestamp"] <= pd.Timestamp(to_utc(end))]
    if universe and sym_col is not None:
        frame = frame[frame["instrument"].isin(universe)]
    frame = frame.sort_values(["timestamp", "instrument"], kind="mergesort")

    return [
        Candle(
            timestamp=row.timestamp.to_pydatetime(),
            instrument=row.instrument,
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


def sanitize_object_path(location: str) -> str:
    """Reduce a storage location to a safe relative object path.

    Accepts plain relative paths, ``s3://bucket/key`` and
    ``http(s)://host/bucket/key`` forms.
    """
    location = location.strip()
    if location.startswith("s3://"):
        rest = location[len("s3://") :]
        if "/" not in rest:
            raise ValueError(f"Invalid s3:// URL format: {location}")
        object_path = rest.split("/", 1)[1]
    elif location.startswith(("http://", "https://")):
        parts = [p for p in location.split("://", 1)[1].split("/")[1:] if p]
        if len(parts) < 2:
            raise ValueError(f"Invalid URL path format: {location}")
        object_path = "/".join(parts[1:])
    else:
        object_path = location
    if "\0" in object_path:
        raise ValueError("Invalid storage path: null bytes not allowed")
    normalized = posixpath.normpath(object_path)
    if ".." in normalized.split("/"):
        raise ValueError("Invalid storage path: path traversal not allowed")
    if normalized.startswith("/"):
        raise ValueError("Invalid storage path: absolute paths not allowed")
    if not normalized or normalized == ".":
        raise ValueError("Invalid storage path: path cannot be empty")
    return normalized


class BlobStorage(Protocol):
    async def size(self, path: str) -> Optional[int]:
        ...

    async def read(self, path: str) -> bytes:
        ...


class CandleStore(Protocol):
    async def get_candles(
        self, instruments: Sequence[str], start: dt.datetime, end: dt.datetime
    ) -> List[Candle]:
        ...


class LocalBlobStorage:
    """Blob storage rooted at a local directory."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    async def size(self, path: str) -> Optional[int]:
        target = self.root / path
        if not target.is_file():
            return None
        return target.stat().st_size

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread((self.root / path).read_bytes)


class InMemoryCandleStore:
    """Candle store over a fixed list of candles; useful for tests and replays."""

    def __init__(self, candles: Iterable[Candle]) -> None:
        self._candles = list(candles)

    async def get_candles(
        self, instruments: Sequence[str], start: dt.datetime, end: dt.datetime
    ) -> List[Candle]:
        wanted = set(instruments)
        lo, hi = to_utc(start), to_utc(end)
        return [c for c in self._candles if c.instrument in wanted and lo <= to_utc(c.timestamp) <= hi]


def resolve_instruments(
    requested: Sequence[str],
    known: Optional[Iterable[str]] = None,
    limit: int = DEFAULT_MAX_INSTRUMENTS,
) -> Tuple[List[str], List[str]]:
    """Resolve a dataset's instrument universe.

    Symbols are upper-cased and de-duplicated in order.  When ``known`` is
    given, symbols not in it are retried without a quote suffix
    (``BTCUSDT`` -> ``BTC``) and dropped otherwise.

    :return: the resolved instruments and a list of warnings
    :raises InstrumentUniverseUnresolved: if nothing resolves
    """
    known_set = {k.upper() for k in known} if known is not None else None
    resolved: List[str] = []
    warnings: List[str] = []
    for raw in requested:
        symbol = (raw or "").strip().upper()
        if not symbol:
            continue
        if known_set is not None and symbol not in known_set:
            base = next(
                (symbol[: -len(s)] for s in QUOTE_SUFFIXES if symbol.endswith(s) and symbol[: -len(s)] in known_set),
                None,
            )
            if base is None:
                warnings.append(f"Unknown instrument {symbol} skipped")
                continue
            symbol = base
        if symbol not in resolved:
            resolved.append(symbol)
    if not resolved:
        raise InstrumentUniverseUnresolved("No instruments could be resolved for the dataset")
    if len(resolved) > limit:
        warnings.append(f"Instrument universe truncated from {len(resolved)} to {limit}")
        resolved = resolved[:limit]
    for message in warnings:
        logger.warning(message)
    return resolved, warnings


class MarketDataLoader:
    """Load a dataset's candles from blob storage or a candle store."""

    def __init__(
        self,
        blob_storage: Optional[BlobStorage] = None,
        candle_store: Optional[CandleStore] = None,
    ) -> None:
        self.blob_storage = blob_storage
        self.candle_store = candle_store

    @retry(
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def _read_blob(self, path: str) -> bytes:
        if self.blob_storage is None:
            raise DataLoadFailed("No blob storage configured")
        size = await self.blob_storage.size(path)
        if size is None:
            raise DataLoadFailed(f"Market data file not found: {path}")
        if size > MAX_CSV_FILE_SIZE_BYTES:
            raise DataLoadFailed(
                f"CSV file exceeds maximum size of {MAX_CSV_FILE_SIZE_BYTES // (1024 * 1024)}MB "
                f"(file size {size / 1024 / 1024:.2f}MB)"
            )
        return await self.blob_storage.read(path)

    async def load_candles(
        self,
        dataset: MarketDataset,
        instruments: Sequence[str],
        start: dt.datetime,
        end: dt.datetime,
    ) -> List[Candle]:
        if dataset.storage_location and dataset.storage_location.strip():
            if self.blob_storage is None:
                raise DataLoadFailed("Dataset has a storage location but no blob storage is configured")
            try:
                path = sanitize_object_path(dataset.storage_location)
            except ValueError as exc:
                raise DataLoadFailed(str(exc)) from exc
            logger.info("Reading market data from storage: %s", path)
            blob = await self._read_blob(path)
            candles = read_candles_csv(blob, instruments, start, end)
        else:
            if self.candle_store is None:
                raise DataLoadFailed("No candle store configured for range queries")
            candles = await self.candle_store.get_candles(list(instruments), start, end)
        logger.info("Loaded %d candles for %d instruments", len(candles), len(instruments))
        return candles

    async def load(
        self,
        dataset: MarketDataset,
        instruments: Sequence[str],
        start: dt.datetime,
        end: dt.datetime,
        max_lookback: Optional[int] = None,
    ) -> MarketDataAligner:
        candles = await self.load_candles(dataset, instruments, start, end)
        return MarketDataAligner(candles, max_lookback=max_lookback)
