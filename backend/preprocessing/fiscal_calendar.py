"""Fiscal calendar normalisation for store-level daily series.

Fiscal weeks are fixed 7-day blocks beginning on one weekday (Friday in the
store data). Week 1 of fiscal year Y is the anchored week containing 4 January,
so fiscal years hold 52 or 53 whole weeks and never split a week.

Two indices come out of this module:
- ``day_id``  : position of a date inside its fiscal year (resets every year)
- ``day_id2`` : per-site running day counter that keeps increasing across a
                fiscal-year rollover, plus ``date2`` which maps it onto a fixed
                reference year for tools that need a date-typed index.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

FRIDAY = 4
DEFAULT_REFERENCE_DATE = "2021-01-01"
CALENDAR_COLUMNS = ["date", "week_id", "year", "day_id"]
SITE_COL = "site_id"

DateLike = Union[str, date, datetime, pd.Timestamp]


class CalendarInconsistency(UserWarning):
    """Raised as a warning when the fiscal calendar does not match the data."""


def _ts() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _log(msg: str):
    print(f"[{_ts()}] {msg}", flush=True)


def _check_weekday(week_start_weekday: int) -> int:
    wd = int(week_start_weekday)
    if not 0 <= wd <= 6:
        raise ValueError(f"week_start_weekday must be in 0..6 (Monday=0), got {week_start_weekday}")
    return wd


@dataclass(frozen=True)
class CalendarDay:
    date: pd.Timestamp
    week_id: int
    year: int
    day_id: int


@dataclass(frozen=True)
class ContinuousIndexState:
    """Running state of the per-site ``day_id2`` fold."""
    prev_day_id: Optional[int] = None
    offset: int = 0
    year_start: Optional[pd.Timestamp] = None


def week_start_of(d: DateLike, week_start_weekday: int = FRIDAY) -> pd.Timestamp:
    """Start of the anchored fiscal week containing ``d``."""
    wd = _check_weekday(week_start_weekday)
    ts = pd.Timestamp(d).normalize()
    return ts - pd.Timedelta(days=(ts.weekday() - wd) % 7)


def fiscal_year_start(year: int, week_start_weekday: int = FRIDAY) -> pd.Timestamp:
    """First day of week 1 of fiscal ``year``."""
    return week_start_of(date(int(year), 1, 4), week_start_weekday)


def fiscal_year_length(year: int, week_start_weekday: int = FRIDAY) -> int:
    return int((fiscal_year_start(year + 1, week_start_weekday) - fiscal_year_start(year, week_start_weekday)).days)


def build_calendar(
    start_date: DateLike,
    end_date: DateLike,
    week_start_weekday: int = FRIDAY,
    first_fiscal_year: Optional[int] = None,
) -> pd.DataFrame:
    """
    Build one calendar row per day in ``[start_date, end_date]``.

    Args:
        start_date: First date (inclusive)
        end_date: Last date (inclusive)
        week_start_weekday: Weekday fiscal weeks begin on (Monday=0 ... Sunday=6)
        first_fiscal_year: Label of the fiscal year containing ``start_date``.
            Defaults to the fiscal year derived from the week-1 rule.

    Returns:
        DataFrame with columns date, week_id, year, day_id
    """
    wd = _check_weekday(week_start_weekday)
    start = pd.Timestamp(start_date).normalize()
    end = pd.Timestamp(end_date).normalize()
    if end < start:
        raise ValueError(f"end_date {end.date()} is before start_date {start.date()}")

    dates = pd.date_range(start, end, freq="D")
    week_starts = dates - pd.to_timedelta((dates.weekday - wd) % 7, unit="D")
    # a week belongs to the fiscal year holding its 4th day
    structural_year = (week_starts + pd.Timedelta(days=3)).year

    year_starts = {y: fiscal_year_start(y, wd) for y in np.unique(structural_year)}
    fy_start = pd.DatetimeIndex([year_starts[y] for y in structural_year])

    week_id = ((week_starts - fy_start).days // 7 + 1).astype(int)
    day_id = ((dates - fy_start).days + 1).astype(int)

    # year label: count week_id resets (max -> 1), seeded by the first fiscal year
    seed = int(structural_year[0]) if first_fiscal_year is None else int(first_fiscal_year)
    resets = np.r_[0, (np.diff(week_id) < 0).astype(int)]
    year = seed + np.cumsum(resets)

    return pd.DataFrame({
        "date": dates,
        "week_id": week_id,
        "year": year.astype(int),
        "day_id": day_id,
    })


def calendar_days(calendar: pd.DataFrame) -> List[CalendarDay]:
    return [
        CalendarDay(date=pd.Timestamp(r.date), week_id=int(r.week_id), year=int(r.year), day_id=int(r.day_id))
        for r in calendar[CALENDAR_COLUMNS].itertuples(index=False)
    ]


def detect_week_start(
    timeseries: pd.DataFrame, date_col: str = "date", week_col: str = "week_id"
) -> int:
    """
    Find the weekday on which complete fiscal weeks start in a source table.

    Consecutive dates sharing a week_id form a run; only runs of exactly seven
    days count as complete weeks. If complete weeks start on more than one
    weekday a CalendarInconsistency warning is issued and the most frequent
    weekday is returned.
    """
    if date_col not in timeseries.columns or week_col not in timeseries.columns:
        raise KeyError(f"Expected columns '{date_col}' and '{week_col}'")

    df = timeseries[[date_col, week_col]].copy()
    df[date_col] = pd.to_datetime(df[date_col]).dt.normalize()
    df = df.dropna().drop_duplicates(subset=[date_col]).sort_values(date_col).reset_index(drop=True)

    new_run = (df[week_col] != df[week_col].shift()) | (df[date_col].diff() != pd.Timedelta(days=1))
    run_id = new_run.cumsum()
    runs = df.groupby(run_id)[date_col].agg(["size", "first"])
    complete = runs[runs["size"] == 7]
    if complete.empty:
        raise ValueError("No complete 7-day fiscal week found; cannot detect the week start weekday")

    counts = complete["first"].dt.weekday.value_counts()
    if len(counts) > 1:
        msg = f"Fiscal weeks start on {len(counts)} different weekdays: {counts.to_dict()}"
        _log(f"WARNING: {msg}")
        warnings.warn(msg, CalendarInconsistency, stacklevel=2)
    return int(counts.idxmax())


def validate_week_ids(
    calendar: pd.DataFrame,
    reference: pd.DataFrame,
    date_col: str = "date",
    week_col: str = "week_id",
    max_examples: int = 10,
) -> Dict:
    """
    Compare computed week_id against an independently supplied reference.

    Returns:
        Dictionary with n_compared, n_mismatch, week_ids_ok, mismatch_examples
    """
    ref = reference[[date_col, week_col]].copy()
    ref[date_col] = pd.to_datetime(ref[date_col]).dt.normalize()
    ref = ref.dropna().drop_duplicates(subset=[date_col])

    merged = calendar[["date", "week_id"]].merge(
        ref.rename(columns={date_col: "date", week_col: "week_id_ref"}),
        on="date", how="inner", validate="one_to_one",
    )
    bad = merged[merged["week_id"] != merged["week_id_ref"].astype(int)]

    examples = [
        {"date": str(r.date.date()), "week_id": int(r.week_id), "week_id_ref": int(r.week_id_ref)}
        for r in bad.head(max_examples).itertuples(index=False)
    ]
    report = {
        "n_compared": int(len(merged)),
        "n_mismatch": int(len(bad)),
        "week_ids_ok": bool(len(bad) == 0),
        "mismatch_examples": examples,
    }
    if len(bad):
        msg = f"{len(bad)} of {len(merged)} dates disagree with the reference week_id"
        _log(f"WARNING: {msg}")
        warnings.warn(msg, CalendarInconsistency, stacklevel=2)
    return report


def advance_continuous_index(
    state: ContinuousIndexState, day_id: int, year_start: Optional[DateLike] = None
) -> Tuple[ContinuousIndexState, int]:
    """
    One step of the day_id2 fold.

    With ``year_start`` (first day of the record's fiscal year) the offset grows
    by the days between consecutive fiscal-year starts, so dates missing around
    a rollover do not compress the index. Without it, a day_id that does not
    exceed the previous one marks a rollover and the previous day_id is taken
    as the length of the year just finished (364 for a 52-week year).
    """
    day_id = int(day_id)
    ys = None if year_start is None else pd.Timestamp(year_start).normalize()
    if state.prev_day_id is None:
        return ContinuousIndexState(prev_day_id=day_id, offset=0, year_start=ys), day_id

    offset = state.offset
    if ys is not None and state.year_start is not None:
        if ys < state.year_start:
            raise ValueError(f"Fiscal year start {ys.date()} precedes {state.year_start.date()}; rows must be sorted")
        offset += int((ys - state.year_start).days)
    elif day_id <= state.prev_day_id:
        offset += state.prev_day_id
    return ContinuousIndexState(prev_day_id=day_id, offset=offset, year_start=ys), day_id + offset


def continuous_day_ids(day_ids: Iterable[int], year_starts: Optional[Iterable[DateLike]] = None) -> List[int]:
    state = ContinuousIndexState()
    day_ids = list(day_ids)
    starts = [None] * len(day_ids) if year_starts is None else list(year_starts)
    if len(starts) != len(day_ids):
        raise ValueError("day_ids and year_starts must have the same length")
    out = []
    for d, ys in zip(day_ids, starts):
        state, d2 = advance_continuous_index(state, d, ys)
        out.append(d2)
    return out


def assign_continuous_index(
    site_days: pd.DataFrame, reference_date: DateLike = DEFAULT_REFERENCE_DATE
) -> pd.DataFrame:
    """
    Add day_id2 and date2 to one site's rows.

    Rows must already be sorted by date ascending (one row per date); the fold
    does not re-sort. When a ``date`` column is present the fiscal-year start
    of each row is derived from it, which keeps gaps at a rollover intact.
    ``date2 = reference_date + (day_id2 - 1)`` days.
    """
    out = site_days.copy()
    day_ids = out["day_id"].astype(int)
    year_starts = None
    if "date" in out.columns:
        year_starts = (pd.to_datetime(out["date"]).dt.normalize()
                       - pd.to_timedelta(day_ids - 1, unit="D")).tolist()
    day_id2 = continuous_day_ids(day_ids.tolist(), year_starts)
    out["day_id2"] = np.asarray(day_id2, dtype=int)
    ref = pd.Timestamp(reference_date).normalize()
    out["date2"] = ref + pd.to_timedelta(out["day_id2"] - 1, unit="D")
    return out


def normalize_store_panel(
    timeseries: pd.DataFrame,
    calendar: Optional[pd.DataFrame] = None,
    week_start_weekday: int = FRIDAY,
    reference_date: DateLike = DEFAULT_REFERENCE_DATE,
    site_col: str = SITE_COL,
) -> pd.DataFrame:
    """
    Join the fiscal calendar onto a per-site daily table and add day_id2/date2.

    The calendar replaces any week_id/year/day_id columns already present.
    Each site's running state starts fresh.
    """
    if site_col not in timeseries.columns or "date" not in timeseries.columns:
        raise KeyError(f"Expected columns '{site_col}' and 'date'")

    if timeseries.empty:
        raise ValueError("Empty store table; nothing to normalise")

    df = timeseries.copy()
    df["date"] = pd.to_datetime(df["date"]).dt.normalize()
    if df.duplicated(subset=[site_col, "date"]).any():
        raise ValueError("Duplicate (site_id, date) rows; aggregate them before normalising")
    df = df.drop(columns=[c for c in ("week_id", "year", "day_id", "day_id2", "date2") if c in df.columns])

    if calendar is None:
        calendar = build_calendar(df["date"].min(), df["date"].max(), week_start_weekday)

    df = df.merge(calendar[CALENDAR_COLUMNS], on="date", how="left", validate="many_to_one")
    if df["day_id"].isna().any():
        missing = df.loc[df["day_id"].isna(), "date"]
        raise ValueError(
            f"Calendar does not cover {missing.nunique()} date(s), "
            f"e.g. {missing.min().date()}..{missing.max().date()}"
        )
    for c in ("week_id", "year", "day_id"):
        df[c] = df[c].astype(int)

    df = df.sort_values([site_col, "date"]).reset_index(drop=True)
    pieces = [assign_continuous_index(g, reference_date) for _, g in df.groupby(site_col, sort=False)]
    return pd.concat(pieces, ignore_index=True)
