"""Reporting API over a snapshot.

This module turns the transactions and fuel logs of a snapshot into pandas DataFrames and
computes the figures shown on the dashboard and report pages: the daily total, the weekly
target progress, per-period sales summaries and fuel consumption.

Timestamps are stored in UTC. The ``tz`` argument of each function sets the time zone in
which calendar days are counted. Weeks start on Sunday.
"""
import datetime
import enum
import logging
from typing import Any, Dict, Optional, Tuple, Union

import pandas as pd

from ..settings import lib

TRANSACTION_COLUMNS = ['id', 'timestamp', 'kind', 'amount', 'quantity']
FUEL_COLUMNS = ['id', 'timestamp', 'fuelType', 'amountPaid', 'liters', 'odometerKm']

DateLike = Union[str, datetime.date, datetime.datetime, pd.Timestamp, None]


class Period(enum.StrEnum):
    Day = 'day'
    Week = 'week'
    Month = 'month'


def _conform_timestamp_column(df: pd.DataFrame, tz: str) -> pd.DataFrame:
    """Parse the 'timestamp' column, drop invalid entries, and sort.

    Timestamps are converted to ``tz`` and made naive, so they compare directly with
    calendar days.
    """
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True, errors='coerce', format='ISO8601')
    clean_df = df.dropna(subset=['timestamp']).copy()

    if len(df) != len(clean_df):
        logging.warning(f'Dropped {len(df) - len(clean_df)} rows with an invalid timestamp.')

    clean_df['timestamp'] = clean_df['timestamp'].dt.tz_convert(tz).dt.tz_localize(None)
    return clean_df.sort_values(by='timestamp', ascending=True).reset_index(drop=True)


def _conform_numeric_columns(df: pd.DataFrame, defaults: Dict[str, float]) -> pd.DataFrame:
    for column, default in defaults.items():
        df[column] = pd.to_numeric(df[column], errors='coerce').fillna(default)
    return df


def transactions_frame(data: Dict[str, Any], tz: str = 'UTC') -> pd.DataFrame:
    """Return the transactions of a snapshot as a DataFrame sorted by timestamp.

    Args:
        data (dict): The snapshot.
        tz (str): Time zone the timestamps are converted to.

    Returns:
        pd.DataFrame: Columns ``id``, ``timestamp``, ``kind``, ``amount``, ``quantity``.
    """
    df = pd.DataFrame(data.get('transactions') or [], columns=TRANSACTION_COLUMNS)
    return (
        df.pipe(_conform_timestamp_column, tz)
        .pipe(_conform_numeric_columns, {'amount': 0.0, 'quantity': 1})
    )


def fuel_frame(data: Dict[str, Any], tz: str = 'UTC') -> pd.DataFrame:
    """Return the fuel logs of a snapshot as a DataFrame sorted by timestamp.

    Returns:
        pd.DataFrame: Columns ``id``, ``timestamp``, ``fuelType``, ``amountPaid``, ``liters``, ``odometerKm``.
    """
    df = pd.DataFrame(data.get('fuelLogs') or [], columns=FUEL_COLUMNS)
    return (
        df.pipe(_conform_timestamp_column, tz)
        .pipe(_conform_numeric_columns, {'amountPaid': 0.0, 'liters': 0.0, 'odometerKm': 0.0})
    )


def _day(value: DateLike, tz: str) -> pd.Timestamp:
    """Return the calendar day of ``value``, or today in ``tz``."""
    if value is None:
        return pd.Timestamp.now(tz=tz).tz_localize(None).normalize()
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert(tz).tz_localize(None)
    return ts.normalize()


def week_start(value: DateLike = None, tz: str = 'UTC') -> pd.Timestamp:
    """Return midnight of the Sunday starting the week of ``value``."""
    day = _day(value, tz)
    return day - pd.Timedelta(days=(day.weekday() + 1) % 7)


def period_range(value: DateLike = None, period: str = Period.Week, tz: str = 'UTC') -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Return the first and last calendar day of the period containing ``value``.

    Args:
        value: A day within the period. Defaults to today.
        period (str): One of ``day``, ``week`` (Sunday to Saturday) or ``month``.
        tz (str): Time zone of today.

    Returns:
        A tuple of (first day, last day).
    """
    period = Period(period)
    day = _day(value, tz)
    if period == Period.Day:
        return day, day
    if period == Period.Week:
        start = week_start(day)
        return start, start + pd.Timedelta(days=6)
    start = day.replace(day=1)
    return start, start + pd.offsets.MonthEnd(0)


def _between(df: pd.DataFrame, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    end_exclusive = end + pd.Timedelta(days=1)
    return df[(df['timestamp'] >= start) & (df['timestamp'] < end_exclusive)]


def daily_summary(data: Dict[str, Any], day: DateLike = None, tz: str = 'UTC') -> Dict[str, Any]:
    """Summarize the sales of one calendar day.

    Returns:
        dict: ``date``, ``total`` (sum of amounts), ``count`` (number of transactions) and
        ``quantities`` (units sold per kind).
    """
    day = _day(day, tz)
    df = _between(transactions_frame(data, tz=tz), day, day)
    quantities = df.groupby('kind')['quantity'].sum()
    return {
        'date': day,
        'total': float(df['amount'].sum()),
        'count': int(len(df)),
        'quantities': {kind: int(quantities.get(kind, 0)) for kind in lib.TRANSACTION_KINDS},
    }


def weekly_progress(data: Dict[str, Any], now: DateLike = None, tz: str = 'UTC') -> Dict[str, Any]:
    """Return the sales since the start of the current week against the weekly target.

    Returns:
        dict: ``week_start``, ``total``, ``target`` and ``percent`` (rounded, capped at 100).
    """
    start = week_start(now, tz=tz)
    df = transactions_frame(data, tz=tz)
    total = float(df.loc[df['timestamp'] >= start, 'amount'].sum())

    target = lib.merge_settings(data.get('settings'))['weeklyTarget']
    if target > 0:
        percent = min(100, round(total / target * 100))
    else:
        percent = 100 if total > 0 else 0

    return {
        'week_start': start,
        'total': total,
        'target': target,
        'percent': percent,
    }


def range_summary(data: Dict[str, Any], value: DateLike = None, period: str = Period.Week,
                  tz: str = 'UTC') -> Dict[str, Any]:
    """Summarize the sales of a day, week or month.

    Returns:
        dict: ``start``, ``end``, ``total`` (sum of amounts), ``count`` (units sold) and
        ``days``, a DataFrame with one ``total`` row per calendar day of the period.
    """
    start, end = period_range(value, period=period, tz=tz)
    df = _between(transactions_frame(data, tz=tz), start, end)

    index = pd.date_range(start, end, freq='D', name='date')
    if df.empty:
        days = pd.DataFrame({'total': 0.0}, index=index)
    else:
        days = (
            df.groupby(df['timestamp'].dt.normalize())['amount']
            .sum()
            .reindex(index, fill_value=0.0)
            .to_frame('total')
            .rename_axis('date')
        )

    return {
        'start': start,
        'end': end,
        'total': float(df['amount'].sum()),
        'count': int(df['quantity'].sum()),
        'days': days.reset_index(),
    }


def fuel_summary(data: Dict[str, Any], value: DateLike = None, period: str = Period.Month,
                 tz: str = 'UTC') -> Dict[str, Any]:
    """Summarize the fuel logs of a week or month.

    Consumption is the distance between the first and the last odometer reading of the
    period divided by all liters of the period. It is None with fewer than two readings.

    Returns:
        dict: ``start``, ``end``, ``total_cost``, ``total_liters``, ``count`` and ``km_per_liter``.
    """
    start, end = period_range(value, period=period, tz=tz)
    df = _between(fuel_frame(data, tz=tz), start, end)

    total_cost = float(df['amountPaid'].sum())
    total_liters = float(df['liters'].sum())

    km_per_liter: Optional[float] = None
    readings = df[df['odometerKm'] > 0]
    if len(readings) > 1:
        distance = readings['odometerKm'].iloc[-1] - readings['odometerKm'].iloc[0]
        if distance > 0 and total_liters > 0:
            km_per_liter = round(float(distance / total_liters), 1)

    return {
        'start': start,
        'end': end,
        'total_cost': total_cost,
        'total_liters': total_liters,
        'count': int(len(df)),
        'km_per_liter': km_per_liter,
    }
