"""
Data download utilities for the IB toolbox.

This package contains helpers for reading and writing market data
files that follow QuantConnect Lean's on-disk layout, plus the
Interactive Brokers historical data source that feeds them.
"""

from .lean_schema import (
    LEAN_TRADE_CSV_COLUMNS,
    Bar,
    BarRecord,
    Resolution,
    build_directory,
    build_trade_csv_filename,
    build_trade_zip_filename,
    build_trade_zip_path,
    normalize_symbol_folder,
    parse_bar_row,
    serialize_bar,
)

__all__ = [
    "LEAN_TRADE_CSV_COLUMNS",
    "Bar",
    "BarRecord",
    "Resolution",
    "build_directory",
    "build_trade_csv_filename",
    "build_trade_zip_filename",
    "build_trade_zip_path",
    "normalize_symbol_folder",
    "parse_bar_row",
    "serialize_bar",
]
