from __future__ import annotations

import asyncio
import logging
import socket
import threading
from datetime import date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, Tuple

from ib_insync import IB, ContFuture, Contract, Crypto, Forex, Index, Stock

from ib_toolbox.exceptions import (
    DataSourceError,
    OperationCancelledError,
    TransientSourceError,
)
from ib_toolbox.trading_calendar import MarketSessionHelper

from .lean_schema import Bar, Resolution
from .models import DownloadRequest

# Historical data pacing, farm connectivity and query timeouts.
TRANSIENT_ERROR_CODES = frozenset({162, 165, 366, 420, 1100, 1101, 2103, 2105, 2107})

# Farm status notices: informational only.
INFORMATIONAL_ERROR_CODES = frozenset({2104, 2106, 2108, 2119, 2158})

# bar size and chunk duration per reqHistoricalData call
CHUNK_SETTINGS = {
    Resolution.SECOND: ("1 secs", "1800 S"),
    Resolution.MINUTE: ("1 min", "1 D"),
    Resolution.HOUR: ("1 hour", "1 W"),
    Resolution.DAILY: ("1 day", "1 Y"),
}

TICKS_PER_REQUEST = 1000


class HistoricalDataSource(Protocol):
    """Anything that can supply bars for a download request."""

    def fetch_bars(
        self,
        request: DownloadRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Bar]:
        ...

    def test_connection(self) -> bool:
        ...


def build_contract(request: DownloadRequest) -> Contract:
    security_type = request.security_type.lower()
    symbol = request.symbol.upper()
    if security_type in ("equity", "stock"):
        return Stock(symbol, request.exchange, request.currency)
    if security_type in ("future", "futures"):
        return ContFuture(symbol, request.exchange, currency=request.currency)
    if security_type == "forex":
        return Forex(symbol)
    if security_type == "index":
        return Index(symbol, request.exchange, request.currency)
    if security_type == "crypto":
        return Crypto(symbol, request.exchange, request.currency)
    return Contract(
        symbol=symbol,
        secType=security_type.upper(),
        exchange=request.exchange,
        currency=request.currency,
    )


def _what_to_show(request: DownloadRequest) -> str:
    return "MIDPOINT" if request.security_type.lower() == "forex" else "TRADES"


def _ensure_event_loop() -> None:
    # ib_insync needs a loop in whichever thread drives it.
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        try:
            loop = asyncio.get_event_loop_policy().get_event_loop()
            if loop.is_closed():
                raise RuntimeError("closed loop")
        except RuntimeError:
            asyncio.set_event_loop(asyncio.new_event_loop())


class InteractiveBrokersDataSource:
    """
    Historical bar source backed by an IB Gateway/TWS session via ib_insync.

    Bars are requested backwards from the request end in chunks sized to the
    resolution (see :data:`CHUNK_SETTINGS`), which keeps each call inside IB's
    historical data limits. Tick data is requested forwards with
    ``reqHistoricalTicks`` and each trade becomes a single-price bar.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 7497,
        client_id: int = 1,
        *,
        connect_timeout: float = 10.0,
        ib_factory: Callable[[], IB] = IB,
        session_helper: Optional[MarketSessionHelper] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._host = host
        self._port = int(port)
        self._client_id = client_id
        self._connect_timeout = connect_timeout
        self._ib_factory = ib_factory
        self._session_helper = session_helper or MarketSessionHelper()
        self._logger = logger or logging.getLogger("ib_toolbox.jobs")

    # ------------------------------------------------------------ connection
    def test_connection(self) -> bool:
        """Probe the gateway port; raises :class:`DataSourceError` when closed."""

        try:
            with socket.create_connection((self._host, self._port), timeout=self._connect_timeout):
                return True
        except OSError as exc:
            raise DataSourceError(
                f"Cannot reach IB Gateway at {self._host}:{self._port} ({exc}). "
                "Make sure IB Gateway or TWS is running with the API enabled, "
                "or pass --use-ib-automater to start it."
            ) from exc

    # ------------------------------------------------------------------ bars
    def fetch_bars(
        self,
        request: DownloadRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Bar]:
        _ensure_event_loop()
        ib = self._ib_factory()
        errors: List[Tuple[int, str]] = []

        def on_error(req_id, error_code, error_string, contract=None):
            if error_code in INFORMATIONAL_ERROR_CODES:
                return
            errors.append((error_code, error_string))

        ib.errorEvent += on_error
        try:
            try:
                ib.connect(
                    self._host,
                    self._port,
                    clientId=self._client_id,
                    timeout=self._connect_timeout,
                    readonly=True,
                )
            except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
                raise TransientSourceError(
                    f"Connection to IB Gateway at {self._host}:{self._port} failed: {exc}"
                ) from exc

            contract = build_contract(request)
            qualified = ib.qualifyContracts(contract)
            if not qualified:
                self._raise_for_errors(errors)
                raise DataSourceError(f"Could not qualify contract for {request.symbol}")
            contract = qualified[0]

            zone = self._session_helper.get_exchange_timezone(request.exchange)
            start_dt = datetime.combine(request.start, time.min, tzinfo=zone)
            end_dt = datetime.combine(request.end, time.min, tzinfo=zone)

            if request.resolution is Resolution.TICK:
                bars = self._fetch_ticks(ib, contract, request, start_dt, end_dt, zone, errors, cancel_event)
            else:
                bars = self._fetch_chunks(ib, contract, request, start_dt, end_dt, zone, errors, cancel_event)
        finally:
            ib.errorEvent -= on_error
            if ib.isConnected():
                ib.disconnect()

        self._logger.info(
            {
                "event": "fetched",
                "phase": "data_download",
                "symbol": request.symbol,
                "resolution": request.resolution.value,
                "bars": len(bars),
            }
        )
        return bars

    # ----------------------------------------------------------------- helpers
    def _fetch_chunks(self, ib, contract, request, start_dt, end_dt, zone, errors, cancel_event) -> List[Bar]:
        bar_size, duration = CHUNK_SETTINGS[request.resolution]
        chunks: List[List[Bar]] = []
        cursor = end_dt

        while cursor > start_dt:
            self._check_cancelled(cancel_event)
            errors.clear()
            raw = ib.reqHistoricalData(
                contract,
                endDateTime=cursor,
                durationStr=duration,
                barSizeSetting=bar_size,
                whatToShow=_what_to_show(request),
                useRTH=False,
                formatDate=2,
                keepUpToDate=False,
            )
            self._raise_for_errors(errors)
            if not raw:
                break

            chunk = [self._convert_bar(item, zone) for item in raw]
            chunks.append(chunk)

            earliest = datetime.combine(chunk[0].time.date(), chunk[0].time.time(), tzinfo=zone)
            if earliest >= cursor:
                break
            cursor = earliest

        start_naive = start_dt.replace(tzinfo=None)
        end_naive = end_dt.replace(tzinfo=None)
        seen = set()
        bars: List[Bar] = []
        for chunk in reversed(chunks):
            for bar in chunk:
                if not start_naive <= bar.time < end_naive or bar.time in seen:
                    continue
                seen.add(bar.time)
                bars.append(bar)
        return bars

    def _fetch_ticks(self, ib, contract, request, start_dt, end_dt, zone, errors, cancel_event) -> List[Bar]:
        bars: List[Bar] = []
        cursor = start_dt

        while cursor < end_dt:
            self._check_cancelled(cancel_event)
            errors.clear()
            ticks = ib.reqHistoricalTicks(
                contract,
                startDateTime=cursor,
                endDateTime="",
                numberOfTicks=TICKS_PER_REQUEST,
                whatToShow="TRADES",
                useRth=False,
            )
            self._raise_for_errors(errors)
            if not ticks:
                break

            end_naive = end_dt.replace(tzinfo=None)
            for tick in ticks:
                stamp = self._to_exchange_time(tick.time, zone)
                if stamp < cursor.replace(tzinfo=None) or stamp >= end_naive:
                    continue
                price = Decimal(str(tick.price))
                bars.append(Bar(stamp, price, price, price, price, int(tick.size)))

            last = self._to_exchange_time(ticks[-1].time, zone)
            if len(ticks) < TICKS_PER_REQUEST:
                break
            cursor = datetime.combine(last.date(), last.time(), tzinfo=zone) + timedelta(seconds=1)

        return bars

    def _convert_bar(self, item, zone: tzinfo) -> Bar:
        return Bar(
            time=self._to_exchange_time(item.date, zone),
            open=Decimal(str(item.open)),
            high=Decimal(str(item.high)),
            low=Decimal(str(item.low)),
            close=Decimal(str(item.close)),
            volume=max(int(item.volume), 0),
        )

    @staticmethod
    def _to_exchange_time(value, zone: tzinfo) -> datetime:
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(zone)
            return value.replace(tzinfo=None)
        if isinstance(value, date):
            return datetime.combine(value, time.min)
        raise DataSourceError(f"Unexpected bar timestamp {value!r}")

    @staticmethod
    def _raise_for_errors(errors: List[Tuple[int, str]]) -> None:
        # "HMDS query returned no data" only marks the end of available history.
        failures = [item for item in errors if "no data" not in item[1].lower()]
        if not failures:
            return
        code, message = failures[-1]
        text = f"IB error {code}: {message}"
        if code in TRANSIENT_ERROR_CODES:
            raise TransientSourceError(text)
        raise DataSourceError(text)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Download cancelled")
