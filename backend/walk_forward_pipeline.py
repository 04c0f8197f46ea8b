# -*- coding: utf-8 -*-
"""
Walk-forward backtest of daily store-sales forecasts
----------------------------------------------------
For every cutoff day i and every site, each candidate model is fitted on the
first i days of the site's (rollover-free) history and forecasts every
remaining day. Already-realised sales (pre) plus the forecast (fc) give a
full-period prediction (tpred) that is scored against actual sales.

Rolling metrics answer "if we only trust forecasts made from day i onward,
how accurate are we": for each (target, model) the error is pooled over all
cutoffs >= i.

Outputs under out_root:
  - backtest_results.csv, benchmark.csv, failures.csv
  - predictions_long.csv (only with keep_predictions)
  - artifacts/integrity.json, artifacts/RUN.md, artifacts/config.json

Usage (example):
    from walk_forward_pipeline import run_pipeline, ConfigBacktest
    cfg = ConfigBacktest(data_path="data/time_series.csv", out_root="outputs/backtest")
    run_pipeline(cfg)
"""

from __future__ import annotations

import json
import time
import warnings
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from multiprocessing import Pool
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from models.registry import FitError, TransientFitFailure, build_models
from preprocessing.fiscal_calendar import (
    DEFAULT_REFERENCE_DATE,
    FRIDAY,
    CalendarInconsistency,
    build_calendar,
    detect_week_start,
    normalize_store_panel,
    validate_week_ids,
)
from preprocessing.integrity import compute_integrity_report
from utils.metrics import error_metrics, mae, mape, rmse

warnings.filterwarnings("ignore", category=FutureWarning, module="statsmodels")
warnings.filterwarnings("ignore", category=ConvergenceWarning, module="statsmodels")
warnings.filterwarnings("ignore", message="Optimization failed to converge", module="statsmodels")

TARGETS = ["inside_sales", "food_service", "diesel", "unleaded"]
SITE_COL = "site_id"
KEY_COLUMNS = ["target_metric", "model_name", "start_init"]
RESULT_COLUMNS = [
    "site_id", "target_metric", "model_name", "start_init", "horizon_days",
    "fc", "pre", "post", "sales", "tpred", "er",
    "rmse", "mae", "mape", "rmse_daily", "mae_daily", "mape_daily",
]
ROLLING_COLUMNS = ["rmse_roll", "mae_roll", "mape_roll"]
PREDICTION_COLUMNS = [
    "site_id", "target_metric", "model_name", "start_init",
    "date2", "day_id2", "y_true", "y_pred", "y_lo", "y_hi", "error",
]
FAILURE_COLUMNS = ["site_id", "target_metric", "model_name", "start_init", "error_type", "error"]
HORIZON_LABELS = {14: "2 weeks", 21: "3 weeks", 183: "6 months"}

# per-process site frames, filled by the pool initializer
_WORKER_FRAMES: Dict[Any, pd.DataFrame] = {}


class BacktestConfigError(ValueError):
    """Invalid backtest inputs; fatal for the whole run."""


def _ts() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _log(msg: str):
    print(f"[{_ts()}] {msg}", flush=True)


# =========================
# Configuration
# =========================

@dataclass
class ConfigBacktest:
    # --- INPUTS ---
    data_path: str = "./data/time_series_data.csv"
    attributes_path: Optional[str] = None
    sites: Optional[List[str]] = None
    targets: List[str] = None

    # --- CALENDAR ---
    week_start_weekday: int = FRIDAY
    reference_date: str = DEFAULT_REFERENCE_DATE

    # --- MODELS ---
    models: List[str] = None
    model_params: Dict[str, dict] = field(default_factory=dict)

    # --- CUTOFFS ---
    max_cutoff: int = 365
    cutoffs: Optional[List[int]] = None
    benchmark_cutoffs: List[int] = None
    min_train_days: int = 1

    # --- EXECUTION ---
    n_jobs: int = 1
    max_fit_attempts: int = 3
    retry_backoff: float = 0.5
    keep_predictions: bool = False

    # --- OUTPUTS ---
    out_root: str = str((Path.cwd() / "outputs" / "backtest").resolve())

    random_seed: int = 42

    def __post_init__(self):
        if self.targets is None:
            self.targets = list(TARGETS)
        if self.models is None:
            self.models = ["seasonal_naive", "ets", "arima"]
        if self.benchmark_cutoffs is None:
            self.benchmark_cutoffs = [14, 21, 183]


def ensure_dirs(root: str):
    Path(root).mkdir(parents=True, exist_ok=True)
    Path(root, "artifacts").mkdir(parents=True, exist_ok=True)


# =========================
# Fitting with bounded retry
# =========================

def fit_with_retry(
    model,
    series: pd.Series,
    max_attempts: int = 3,
    backoff: float = 0.5,
    context: Optional[Dict[str, Any]] = None,
):
    """
    Fit ``model`` on ``series``, retrying TransientFitFailure with exponential backoff.

    After ``max_attempts`` transient failures a FitError carrying ``context`` is
    raised. Any other exception is converted to FitError immediately.
    """
    context = dict(context or {})
    attempts = max(1, int(max_attempts))
    last: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return model.fit(series)
        except TransientFitFailure as e:
            last = e
            if attempt < attempts:
                delay = float(backoff) * (2 ** (attempt - 1))
                _log(f"[retry] {getattr(model, 'name', model)} attempt {attempt}/{attempts} failed ({e}); "
                     f"retrying in {delay:.2f}s")
                if delay > 0:
                    time.sleep(delay)
        except FitError as e:
            for k, v in context.items():
                e.context.setdefault(k, v)
            raise
        except Exception as e:
            raise FitError(f"{type(e).__name__}: {e}", **context) from e
    raise FitError(
        f"Transient fit failure persisted after {attempts} attempts: {last}",
        attempts=attempts, **context,
    ) from last


def _forecast(fitted, n_steps: int, context: Dict[str, Any]) -> pd.DataFrame:
    try:
        fc = fitted.forecast(n_steps)
    except FitError as e:
        for k, v in context.items():
            e.context.setdefault(k, v)
        raise
    except Exception as e:
        raise FitError(f"Forecast failed: {type(e).__name__}: {e}", **context) from e
    if len(fc) != n_steps:
        raise FitError(f"Forecast returned {len(fc)} steps, expected {n_steps}", **context)
    if not np.isfinite(fc["yhat"].to_numpy(dtype=float)).all():
        raise FitError("Forecast contains non-finite values", **context)
    return fc


# =========================
# Units of work
# =========================

@dataclass
class _Unit:
    site_id: Any
    start_init: int
    frame: Optional[pd.DataFrame]
    targets: List[str]
    models: List[Any]
    min_train_days: int
    max_fit_attempts: int
    retry_backoff: float
    keep_predictions: bool


@dataclass
class BacktestRun:
    results: pd.DataFrame
    predictions: pd.DataFrame
    failures: pd.DataFrame
    n_units: int = 0
    n_done: int = 0
    cancelled: bool = False


def _site_series(frame: pd.DataFrame, target: str) -> pd.Series:
    y = frame.set_index("date2")[target].astype(float)
    y.name = target
    return y


def _score_unit(unit: _Unit) -> Tuple[List[dict], List[pd.DataFrame], List[dict]]:
    """Fit and score every (target, model) for one (cutoff, site)."""
    rows, preds, failures = [], [], []
    i = int(unit.start_init)
    frame = unit.frame if unit.frame is not None else _WORKER_FRAMES[unit.site_id]
    for target in unit.targets:
        y = _site_series(frame, target)
        if i < unit.min_train_days or i >= len(y):
            continue
        train, test = y.iloc[:i], y.iloc[i:]
        actual = test.to_numpy(dtype=float)
        pre, post = float(train.sum()), float(actual.sum())

        for model in unit.models:
            ctx = {"site_id": unit.site_id, "target_metric": target, "model_name": model.name, "start_init": i}
            try:
                fitted = fit_with_retry(model, train, unit.max_fit_attempts, unit.retry_backoff, ctx)
                fc_df = _forecast(fitted, len(test), ctx)
            except FitError as e:
                failures.append({**ctx, "error_type": type(e).__name__, "error": str(e)})
                continue

            yhat = fc_df["yhat"].to_numpy(dtype=float)
            fc = float(yhat.sum())
            tpred = pre + fc
            sales = pre + post
            rows.append({
                **ctx,
                "horizon_days": len(test),
                "fc": fc, "pre": pre, "post": post, "sales": sales, "tpred": tpred,
                "er": tpred - sales,
                "rmse": rmse([sales], [tpred]),
                "mae": mae([sales], [tpred]),
                "mape": mape([sales], [tpred]),
                **{f"{k}_daily": v for k, v in error_metrics(actual, yhat).items()},
            })
            if unit.keep_predictions:
                preds.append(pd.DataFrame({
                    **ctx,
                    "date2": test.index,
                    "day_id2": frame["day_id2"].to_numpy()[i:],
                    "y_true": actual,
                    "y_pred": yhat,
                    "y_lo": fc_df["yhat_lower"].to_numpy(dtype=float),
                    "y_hi": fc_df["yhat_upper"].to_numpy(dtype=float),
                    "error": yhat - actual,
                }))
    return rows, preds, failures


def _is_cancelled(cancel_event) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _init_worker(frames: Dict[Any, pd.DataFrame]):
    # site frames are shipped once per worker; units only carry the site key
    _WORKER_FRAMES.clear()
    _WORKER_FRAMES.update(frames)


def _execute(units: List[_Unit], n_jobs: int, cancel_event=None):
    done = []
    cancelled = False
    step = max(1, len(units) // 10)
    if _is_cancelled(cancel_event):
        return done, True
    if n_jobs <= 1:
        for u in units:
            if _is_cancelled(cancel_event):
                cancelled = True
                break
            done.append(_score_unit(u))
            if len(done) % step == 0:
                _log(f"[backtest] {len(done)}/{len(units)} units scored")
    else:
        frames = {u.site_id: u.frame for u in units}
        light = [replace(u, frame=None) for u in units]
        chunksize = max(1, len(units) // (n_jobs * 8))
        with Pool(processes=n_jobs, initializer=_init_worker, initargs=(frames,)) as pool:
            for frag in pool.imap_unordered(_score_unit, light, chunksize=chunksize):
                done.append(frag)
                if len(done) % step == 0:
                    _log(f"[backtest] {len(done)}/{len(units)} units scored")
                if _is_cancelled(cancel_event):
                    cancelled = True
                    pool.terminate()
                    break
    return done, cancelled


# =========================
# Rolling metrics & benchmark
# =========================

def add_rolling_metrics(results: pd.DataFrame) -> pd.DataFrame:
    """
    Add rmse_roll / mae_roll / mape_roll.

    For each (target_metric, model_name) and cutoff i, the metric pools the
    full-period error ``er`` of every row with start_init >= i (all sites).
    Rows with zero actual sales are left out of mape_roll.
    """
    out = results.drop(columns=[c for c in ROLLING_COLUMNS if c in results.columns])
    if out.empty:
        for c in ROLLING_COLUMNS:
            out[c] = pd.Series(dtype=float)
        return out

    err = out["er"].astype(float)
    truth = out["sales"].astype(float)
    nz = truth != 0
    tmp = out[KEY_COLUMNS].copy()
    tmp["_n"] = 1
    tmp["_se"] = err ** 2
    tmp["_ae"] = err.abs()
    tmp["_ape"] = np.where(nz, err.abs() / truth.abs().where(nz, 1.0), 0.0)
    tmp["_ape_n"] = nz.astype(int)

    per = tmp.groupby(KEY_COLUMNS)[["_n", "_se", "_ae", "_ape", "_ape_n"]].sum()
    per = per.sort_index(ascending=False)
    cum = per.groupby(level=["target_metric", "model_name"]).cumsum()

    roll = pd.DataFrame(
        {
            "rmse_roll": np.sqrt(cum["_se"] / cum["_n"]),
            "mae_roll": cum["_ae"] / cum["_n"],
            "mape_roll": cum["_ape"] / cum["_ape_n"].where(cum["_ape_n"] > 0) * 100.0,
        },
        index=cum.index,
    ).reset_index()
    return out.merge(roll, on=KEY_COLUMNS, how="left")


def benchmark_table(results: pd.DataFrame, cutoffs: Sequence[int] = (14, 21, 183)) -> pd.DataFrame:
    """Best model per (target_metric, cutoff) by rolling RMSE and by rolling MAPE."""
    cols = ["target_metric", "start_init", "horizon_label",
            "best_model_rmse", "rmse_roll", "best_model_mape", "mape_roll"]
    if results.empty:
        return pd.DataFrame(columns=cols)

    roll = results.drop_duplicates(subset=KEY_COLUMNS)[KEY_COLUMNS + ROLLING_COLUMNS]
    roll = roll[roll["start_init"].isin(list(cutoffs))]

    rows = []
    for (target, cutoff), g in roll.groupby(["target_metric", "start_init"], sort=True):
        g_r = g.dropna(subset=["rmse_roll"])
        g_m = g.dropna(subset=["mape_roll"])
        best_r = g_r.loc[g_r["rmse_roll"].idxmin()] if len(g_r) else None
        best_m = g_m.loc[g_m["mape_roll"].idxmin()] if len(g_m) else None
        rows.append({
            "target_metric": target,
            "start_init": int(cutoff),
            "horizon_label": HORIZON_LABELS.get(int(cutoff), f"{int(cutoff)} days"),
            "best_model_rmse": best_r["model_name"] if best_r is not None else None,
            "rmse_roll": float(best_r["rmse_roll"]) if best_r is not None else np.nan,
            "best_model_mape": best_m["model_name"] if best_m is not None else None,
            "mape_roll": float(best_m["mape_roll"]) if best_m is not None else np.nan,
        })
    return pd.DataFrame(rows, columns=cols)


# =========================
# Backtest driver
# =========================

def collect_backtest(
    panel: pd.DataFrame,
    sites: Optional[Sequence[Any]] = None,
    targets: Optional[Sequence[str]] = None,
    models: Optional[Sequence[Any]] = None,
    max_cutoff: int = 365,
    cutoffs: Optional[Sequence[int]] = None,
    *,
    model_params: Optional[Dict[str, dict]] = None,
    min_train_days: int = 1,
    n_jobs: int = 1,
    max_fit_attempts: int = 3,
    retry_backoff: float = 0.5,
    keep_predictions: bool = False,
    cancel_event=None,
) -> BacktestRun:
    """
    Run the walk-forward backtest over (cutoff, site) units.

    Args:
        panel: Normalised store panel (site_id, day_id2, date2 and target columns)
        sites: Sites to evaluate (default: all sites in the panel)
        targets: Target columns (default: the four sales metrics)
        models: Candidate model instances or registry names
        max_cutoff: Cutoffs default to 1..max_cutoff
        cutoffs: Explicit training-prefix lengths, overrides max_cutoff
        cancel_event: Object with ``is_set()``; checked between units

    Returns:
        BacktestRun with results (including rolling metrics), predictions, failures
    """
    if panel is None or panel.empty:
        raise BacktestConfigError("Store panel is empty.")
    missing = [c for c in (SITE_COL, "day_id2", "date2") if c not in panel.columns]
    if missing:
        raise BacktestConfigError(f"Panel is missing columns {missing}; normalise it first.")

    targets = list(TARGETS if targets is None else targets)
    if not targets:
        raise BacktestConfigError("No target metrics given.")
    bad_targets = [t for t in targets if t not in panel.columns]
    if bad_targets:
        raise BacktestConfigError(f"Target columns not found in panel: {bad_targets}")

    available = list(pd.unique(panel[SITE_COL]))
    sites = available if sites is None else list(sites)
    if not sites:
        raise BacktestConfigError("Site list is empty.")
    unknown = [s for s in sites if s not in set(available)]
    if unknown:
        raise BacktestConfigError(f"Sites not found in panel: {unknown}")

    if not models:
        raise BacktestConfigError("No candidate models given.")
    names = [m for m in models if isinstance(m, str)]
    built = iter(build_models(names, model_params))
    models = [next(built) if isinstance(m, str) else m for m in models]

    cutoffs = list(range(1, int(max_cutoff) + 1)) if cutoffs is None else sorted({int(c) for c in cutoffs})
    if not cutoffs or min(cutoffs) < 1:
        raise BacktestConfigError(f"Cutoffs must be >= 1, got {cutoffs[:5] if cutoffs else cutoffs}")

    frames = {
        s: panel[panel[SITE_COL] == s].sort_values("day_id2").reset_index(drop=True)
        for s in sites
    }
    units = [
        _Unit(
            site_id=s, start_init=c, frame=frames[s], targets=targets, models=models,
            min_train_days=int(min_train_days), max_fit_attempts=int(max_fit_attempts),
            retry_backoff=float(retry_backoff), keep_predictions=bool(keep_predictions),
        )
        for c in cutoffs
        for s in sites
    ]
    _log(f"[backtest] {len(units)} units: {len(cutoffs)} cutoffs x {len(sites)} sites; "
         f"targets={targets}; models={[m.name for m in models]}; n_jobs={n_jobs}")

    done, cancelled = _execute(units, int(n_jobs), cancel_event)
    if cancelled:
        _log(f"[backtest] cancelled after {len(done)}/{len(units)} units; returning partial results")

    rows = [r for frag in done for r in frag[0]]
    pred_frames = [p for frag in done for p in frag[1]]
    fail_rows = [f for frag in done for f in frag[2]]

    results = pd.DataFrame(rows, columns=RESULT_COLUMNS)
    if len(results):
        results = results.sort_values(["target_metric", "model_name", "site_id", "start_init"]).reset_index(drop=True)
    results = add_rolling_metrics(results)

    predictions = (pd.concat(pred_frames, ignore_index=True) if pred_frames
                   else pd.DataFrame(columns=PREDICTION_COLUMNS))
    failures = pd.DataFrame(fail_rows, columns=FAILURE_COLUMNS)

    _log(f"[backtest] {len(results)} result rows, {len(failures)} failed fits excluded")
    return BacktestRun(
        results=results, predictions=predictions, failures=failures,
        n_units=len(units), n_done=len(done), cancelled=cancelled,
    )


def run_backtest(
    panel: pd.DataFrame,
    sites: Optional[Sequence[Any]] = None,
    targets: Optional[Sequence[str]] = None,
    models: Optional[Sequence[Any]] = None,
    max_cutoff: int = 365,
    **kwargs,
) -> pd.DataFrame:
    """Result table of the walk-forward backtest (see collect_backtest)."""
    return collect_backtest(panel, sites, targets, models, max_cutoff, **kwargs).results


# =========================
# Main runner
# =========================

def load_timeseries(path: str) -> pd.DataFrame:
    df = pd.read_csv(path)
    if SITE_COL not in df.columns or "date" not in df.columns:
        raise BacktestConfigError(f"'{SITE_COL}' and 'date' columns are required in {path}")
    df["date"] = pd.to_datetime(df["date"], errors="coerce")
    bad = int(df["date"].isna().sum())
    if bad:
        _log(f"[WARN] Dropping {bad} row(s) with unparseable dates")
        df = df.dropna(subset=["date"])
    df[SITE_COL] = df[SITE_COL].astype(str)
    return df


def run_pipeline(config: ConfigBacktest, cancel_event=None) -> str:
    np.random.seed(config.random_seed)

    out_root = Path(config.out_root)
    ensure_dirs(str(out_root))

    _log(f"Loading store time series: {config.data_path}")
    ts = load_timeseries(config.data_path)
    attributes = None
    if config.attributes_path:
        attributes = pd.read_csv(config.attributes_path)
        attributes[SITE_COL] = attributes[SITE_COL].astype(str)

    calendar_report: Dict[str, Any] = {"week_start_weekday": config.week_start_weekday}
    calendar = build_calendar(ts["date"].min(), ts["date"].max(), config.week_start_weekday)
    if "week_id" in ts.columns:
        notes: List[str] = []
        detected = None
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", CalendarInconsistency)
            try:
                detected = detect_week_start(ts)
            except ValueError as e:
                _log(f"[WARN] Week start detection skipped: {e}")
                notes.append(str(e))
            calendar_report.update(validate_week_ids(calendar, ts))
        calendar_report["detected_week_start_weekday"] = detected
        calendar_report["warnings"] = notes + [
            str(w.message) for w in caught if issubclass(w.category, CalendarInconsistency)
        ]
        if detected is not None and detected != config.week_start_weekday:
            _log(f"[WARN] Data suggests weeks start on weekday {detected}, "
                 f"configured {config.week_start_weekday}")

    # checked on the source rows; normalising sorts them and rejects duplicates
    integrity = compute_integrity_report(ts, config.targets, attributes)
    integrity["calendar"] = calendar_report
    (out_root / "artifacts" / "integrity.json").write_text(json.dumps(integrity, indent=2), encoding="utf-8")
    if not integrity["ordering_ok"] or not integrity["gaps_ok"]:
        _log(f"[WARN] Source rows: unsorted={integrity['unsorted_sites']} "
             f"duplicated={integrity['duplicated_sites']} gaps={integrity['gap_sites']}")

    panel = normalize_store_panel(ts, calendar, config.week_start_weekday, config.reference_date)

    sites = config.sites if config.sites else None
    run = collect_backtest(
        panel, sites=sites, targets=config.targets, models=config.models,
        max_cutoff=config.max_cutoff, cutoffs=config.cutoffs,
        model_params=config.model_params, min_train_days=config.min_train_days,
        n_jobs=config.n_jobs, max_fit_attempts=config.max_fit_attempts,
        retry_backoff=config.retry_backoff, keep_predictions=config.keep_predictions,
        cancel_event=cancel_event,
    )
    bench = benchmark_table(run.results, config.benchmark_cutoffs)

    run.results.to_csv(out_root / "backtest_results.csv", index=False)
    bench.to_csv(out_root / "benchmark.csv", index=False)
    run.failures.to_csv(out_root / "failures.csv", index=False)
    if config.keep_predictions:
        run.predictions.to_csv(out_root / "predictions_long.csv", index=False)

    for r in bench.itertuples(index=False):
        _log(f"[benchmark] {r.target_metric} @ {r.horizon_label}: "
             f"RMSE best={r.best_model_rmse} ({r.rmse_roll:,.2f}), "
             f"MAPE best={r.best_model_mape} ({r.mape_roll:.2f}%)")

    with open(out_root / "artifacts" / "RUN.md", "w", encoding="utf-8") as f:
        f.write("# Walk-forward backtest run\n\n")
        f.write(f"- timestamp: {datetime.utcnow().isoformat()}Z\n")
        f.write(f"- data_path: {config.data_path}\n")
        f.write(f"- targets: {config.targets}\n")
        f.write(f"- models: {config.models}\n")
        f.write(f"- cutoffs: {'1..' + str(config.max_cutoff) if config.cutoffs is None else config.cutoffs}\n")
        f.write(f"- units: {run.n_done}/{run.n_units}{' (cancelled)' if run.cancelled else ''}\n")
        f.write(f"- result rows: {len(run.results)}\n")
        f.write(f"- failed fits: {len(run.failures)}\n")
        f.write(f"\nOutputs written to: {config.out_root}\n")
        f.write("- backtest_results.csv\n- benchmark.csv\n- failures.csv\n")
        if config.keep_predictions:
            f.write("- predictions_long.csv\n")
        f.write("- artifacts/integrity.json\n")

    with open(out_root / "artifacts" / "config.json", "w", encoding="utf-8") as f:
        json.dump(asdict(config), f, indent=2)

    _log(f"[OK] Backtest outputs in: {config.out_root}")
    return str(config.out_root)


if __name__ == "__main__":
    run_pipeline(ConfigBacktest())
