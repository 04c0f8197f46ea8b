"""Data-quality checks on the store panel before backtesting."""

from __future__ import annotations

from typing import Dict, List, Optional

import pandas as pd

from .fiscal_calendar import SITE_COL


def check_site_ordering(panel: pd.DataFrame, site_col: str = SITE_COL, date_col: str = "date") -> Dict:
    """
    Sites whose rows are not strictly increasing by date, or have missing days.

    The continuous day index is a sequential fold and assumes this ordering.
    Run it on the raw table; the normalised panel is already sorted.

    Returns:
        Dictionary with ordering_ok, unsorted_sites, duplicated_sites,
        gaps_ok, gap_sites (site -> number of missing days), n_missing_days
    """
    unsorted, duplicated, gaps = [], [], {}
    for site, g in panel.groupby(site_col, sort=True):
        d = pd.to_datetime(g[date_col]).dt.normalize()
        if d.duplicated().any():
            duplicated.append(site)
        if not (d.is_monotonic_increasing and d.is_unique):
            unsorted.append(site)
        uniq = d.dropna().unique()
        if len(uniq):
            span = int((d.max() - d.min()).days) + 1
            missing = span - len(uniq)
            if missing > 0:
                gaps[str(site)] = int(missing)
    return {
        "ordering_ok": not unsorted and not duplicated,
        "unsorted_sites": [str(s) for s in unsorted],
        "duplicated_sites": [str(s) for s in duplicated],
        "gaps_ok": not gaps,
        "gap_sites": gaps,
        "n_missing_days": int(sum(gaps.values())),
    }


def zero_sales_report(panel: pd.DataFrame, targets: List[str], site_col: str = SITE_COL) -> Dict:
    """
    Count zero-valued days per site and target.

    Zero is a valid no-sales day, but those points are excluded from MAPE.
    """
    counts: Dict[str, Dict[str, int]] = {}
    for t in targets:
        if t not in panel.columns:
            continue
        z = (panel[t] == 0).groupby(panel[site_col]).sum()
        z = z[z > 0]
        if len(z):
            counts[t] = {str(k): int(v) for k, v in z.items()}
    return {
        "n_zero_days": int(sum(sum(v.values()) for v in counts.values())),
        "zero_days_by_target": counts,
    }


def check_site_keys(
    timeseries: pd.DataFrame, attributes: pd.DataFrame, site_col: str = SITE_COL
) -> Dict:
    """Join-key coverage between the daily series and the site-attributes table."""
    if site_col not in attributes.columns:
        raise KeyError(f"Site attributes table has no '{site_col}' column")
    ts_sites = set(timeseries[site_col].astype(str).unique())
    attr_keys = attributes[site_col].astype(str)
    attr_sites = set(attr_keys.unique())
    dup = sorted(attr_keys[attr_keys.duplicated()].unique().tolist())
    missing_attr = sorted(ts_sites - attr_sites)
    missing_ts = sorted(attr_sites - ts_sites)
    return {
        "keys_ok": not dup and not missing_attr,
        "sites_without_attributes": missing_attr,
        "sites_without_timeseries": missing_ts,
        "duplicated_attribute_keys": dup,
    }


def compute_integrity_report(
    panel: pd.DataFrame,
    targets: List[str],
    attributes: Optional[pd.DataFrame] = None,
    site_col: str = SITE_COL,
) -> Dict:
    """
    Bundle the panel checks into one JSON-serialisable report.

    Pass the raw store table (as loaded) so ordering and gaps reflect the source.
    """
    report = {
        "n_rows": int(len(panel)),
        "n_sites": int(panel[site_col].nunique()),
        "date_min": str(pd.to_datetime(panel["date"]).min().date()) if len(panel) else None,
        "date_max": str(pd.to_datetime(panel["date"]).max().date()) if len(panel) else None,
        "missing_targets": [t for t in targets if t not in panel.columns],
    }
    report.update(check_site_ordering(panel, site_col=site_col))
    report.update(zero_sales_report(panel, targets, site_col=site_col))
    days = panel.groupby(site_col)["date"].size()
    report["days_per_site"] = {"min": int(days.min()), "max": int(days.max())} if len(days) else {}
    if attributes is not None:
        report["site_keys"] = check_site_keys(panel, attributes, site_col=site_col)
    return report
