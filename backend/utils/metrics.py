"""Point-forecast accuracy metrics shared by the backtester."""

from __future__ import annotations

from typing import Dict

import numpy as np


def _pair(y_true, y_pred):
    t = np.asarray(y_true, dtype=float).ravel()
    p = np.asarray(y_pred, dtype=float).ravel()
    if t.shape != p.shape:
        raise ValueError(f"y_true and y_pred must have same length: {len(t)} vs {len(p)}")
    return t, p


def rmse(y_true, y_pred) -> float:
    t, p = _pair(y_true, y_pred)
    if t.size == 0:
        return np.nan
    return float(np.sqrt(np.mean((t - p) ** 2)))


def mae(y_true, y_pred) -> float:
    t, p = _pair(y_true, y_pred)
    if t.size == 0:
        return np.nan
    return float(np.mean(np.abs(t - p)))


def mape(y_true, y_pred) -> float:
    """
    Mean absolute percentage error, in percent.

    Points whose true value is exactly zero (no-sales days) are left out of the
    average; if every point is zero the result is NaN.
    """
    t, p = _pair(y_true, y_pred)
    keep = t != 0
    if not keep.any():
        return np.nan
    return float(np.mean(np.abs(t[keep] - p[keep]) / np.abs(t[keep])) * 100.0)


def error_metrics(y_true, y_pred) -> Dict[str, float]:
    return {"rmse": rmse(y_true, y_pred), "mae": mae(y_true, y_pred), "mape": mape(y_true, y_pred)}
