"""
QuantConnect Lean trade data layout helpers.

Archives live under a fixed directory derived from the request:

    <base>/<security type>/<market>/<resolution>/<symbol>/<filename>

where ``market`` is ``usa`` for equities and ``generic`` for every other
security type, and every segment is lowercase. Sub-daily resolutions (tick,
second, minute, hour) store one archive per calendar day named
``<YYYYMMDD>_trade.zip``; daily data is stored in ``<symbol>.zip``. Each
archive contains a single CSV entry with the same stem and a ``.csv``
extension. CSV rows are comma-separated without a header:

    YYYYMMDD HH:MM:SS, open, high, low, close, volume

Prices are written in invariant fixed-point form (period decimal separator,
no thousands separator) and volume is a plain integer. The row shape is the
same for every resolution; only grouping and file naming differ.

The functions in this module are pure. The writer and the snapshot loader
both derive paths from them, which is what lets the loader find archives
without listing directories.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Sequence, Union

from ib_toolbox.exceptions import MalformedRowError, UnsupportedResolutionError

LEAN_TIMESTAMP_FORMAT = "%Y%m%d %H:%M:%S"
LEAN_DATE_FORMAT = "%Y%m%d"

EQUITY_SECURITY_TYPE = "equity"
EQUITY_MARKET = "usa"
GENERIC_MARKET = "generic"

# Column order for Lean trade CSV rows.
LEAN_TRADE_CSV_COLUMNS: Sequence[str] = (
    "time",
    "open",
    "high",
    "low",
    "close",
    "volume",
)

_DECIMAL_TOKEN = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$")
_INTEGER_TOKEN = re.compile(r"^[+-]?\d+$")
_TIMESTAMP_TOKEN = re.compile(r"^[0-9]{8} [0-9]{2}:[0-9]{2}:[0-9]{2}$")

PriceLike = Union[Decimal, int, float, str]


class Resolution(str, Enum):
    """Lean trade resolutions supported by the toolbox."""

    TICK = "tick"
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAILY = "daily"

    @classmethod
    def parse(cls, value: Union[str, "Resolution"]) -> "Resolution":
        """Resolve ``value`` case-insensitively, raising for unknown names."""

        if isinstance(value, Resolution):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedResolutionError(value) from None

    @property
    def is_daily(self) -> bool:
        return self is Resolution.DAILY


def normalize_symbol_folder(symbol: str) -> str:
    """Return the lowercase folder name used by Lean for a symbol."""

    return symbol.strip().lower()


def market_for(security_type: str) -> str:
    """Return the market bucket for ``security_type``."""

    if security_type.strip().lower() == EQUITY_SECURITY_TYPE:
        return EQUITY_MARKET
    return GENERIC_MARKET


def build_directory(
    base_dir: Path,
    symbol: str,
    security_type: str,
    resolution: Union[str, Resolution],
) -> Path:
    """
    Compute the directory holding a symbol's archives.

    Parameters
    ----------
    base_dir:
        Root of the Lean data tree.
    symbol:
        Ticker symbol (case-insensitive).
    security_type:
        Security type such as ``equity``; unknown types land in ``generic``.
    resolution:
        Target data resolution (case-insensitive).
    """

    resolution = Resolution.parse(resolution)
    return (
        Path(base_dir)
        / security_type.strip().lower()
        / market_for(security_type)
        / resolution.value
        / normalize_symbol_folder(symbol)
    )


def _archive_stem(symbol: str, resolution: Union[str, Resolution], trading_day: date) -> str:
    resolution = Resolution.parse(resolution)
    if resolution.is_daily:
        return normalize_symbol_folder(symbol)
    return f"{trading_day.strftime(LEAN_DATE_FORMAT)}_trade"


def build_trade_zip_filename(
    symbol: str,
    resolution: Union[str, Resolution],
    trading_day: date,
) -> str:
    """Return the archive name for ``trading_day`` (ignored for daily data)."""

    return f"{_archive_stem(symbol, resolution, trading_day)}.zip"


def build_trade_csv_filename(
    symbol: str,
    resolution: Union[str, Resolution],
    trading_day: date,
) -> str:
    """Return the CSV entry name stored inside the archive for ``trading_day``."""

    return f"{_archive_stem(symbol, resolution, trading_day)}.csv"


def build_trade_zip_path(
    base_dir: Path,
    symbol: str,
    security_type: str,
    resolution: Union[str, Resolution],
    trading_day: date,
) -> Path:
    """Full archive path; combines :func:`build_directory` and the file name."""

    directory = build_directory(base_dir, symbol, security_type, resolution)
    return directory / build_trade_zip_filename(symbol, resolution, trading_day)


def csv_entry_for_archive(filename: str) -> str:
    """Map an archive file name to the CSV entry it wraps."""

    return f"{Path(filename).stem}.csv"


@dataclass(frozen=True)
class Bar:
    """One OHLCV observation. ``time`` is naive and exchange-local."""

    time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int


@dataclass(frozen=True)
class BarRecord:
    """A bar read back from disk, tagged with the file it came from."""

    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int
    source_file: str

    @classmethod
    def from_bar(cls, bar: Bar, source_file: str) -> "BarRecord":
        if not source_file or not source_file.strip():
            raise ValueError("source_file must not be empty")
        return cls(
            timestamp=bar.time,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            volume=bar.volume,
            source_file=source_file,
        )

    def to_bar(self) -> Bar:
        return Bar(self.timestamp, self.open, self.high, self.low, self.close, self.volume)

    def to_csv_row(self) -> str:
        return serialize_bar(self.to_bar())

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": format_price(self.open),
            "high": format_price(self.high),
            "low": format_price(self.low),
            "close": format_price(self.close),
            "volume": self.volume,
            "source_file": self.source_file,
        }


def format_price(value: PriceLike) -> str:
    """Render a price in invariant fixed-point form, keeping its scale."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return format(value, "f")


def serialize_bar(bar: Bar) -> str:
    """Serialize one bar to a Lean CSV row."""

    return ",".join(
        (
            bar.time.strftime(LEAN_TIMESTAMP_FORMAT),
            format_price(bar.open),
            format_price(bar.high),
            format_price(bar.low),
            format_price(bar.close),
            str(int(bar.volume)),
        )
    )


def serialize_bars(bars: Iterable[Bar]) -> str:
    """Serialize bars to Lean's newline-delimited CSV payload."""

    return "\n".join(serialize_bar(bar) for bar in bars)


def _parse_decimal(token: str, column: str) -> Decimal:
    if not _DECIMAL_TOKEN.match(token):
        raise MalformedRowError(f"Invalid {column} value {token!r}")
    try:
        return Decimal(token)
    except InvalidOperation as exc:
        raise MalformedRowError(f"Invalid {column} value {token!r}") from exc


def parse_bar_row(line: str, source_file: str) -> BarRecord:
    """
    Parse one Lean CSV row into a :class:`BarRecord`.

    Raises :class:`MalformedRowError` when the row does not hold exactly six
    comma-separated fields or a field fails to parse.
    """

    if not source_file or not source_file.strip():
        raise ValueError("source_file must not be empty")
    if not line or not line.strip():
        raise MalformedRowError("Empty row")

    segments = [segment.strip() for segment in line.split(",")]
    if len(segments) != len(LEAN_TRADE_CSV_COLUMNS):
        raise MalformedRowError(
            f"Expected {len(LEAN_TRADE_CSV_COLUMNS)} CSV columns, found {len(segments)}"
        )

    if not _TIMESTAMP_TOKEN.match(segments[0]):
        raise MalformedRowError(f"Invalid timestamp {segments[0]!r}")
    try:
        timestamp = datetime.strptime(segments[0], LEAN_TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise MalformedRowError(f"Invalid timestamp {segments[0]!r}") from exc

    open_price = _parse_decimal(segments[1], "open")
    high_price = _parse_decimal(segments[2], "high")
    low_price = _parse_decimal(segments[3], "low")
    close_price = _parse_decimal(segments[4], "close")

    if not _INTEGER_TOKEN.match(segments[5]):
        raise MalformedRowError(f"Invalid volume value {segments[5]!r}")

    return BarRecord(
        timestamp=timestamp,
        open=open_price,
        high=high_price,
        low=low_price,
        close=close_price,
        volume=int(segments[5]),
        source_file=source_file,
    )
