"""Unit tests for the walk-forward backtester."""

import json
import threading
from pathlib import Path
import sys

import numpy as np
import pandas as pd
import pytest

# Add backend to path
BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

from models.registry import FitError, SeasonalNaiveModel, TransientFitFailure
from preprocessing.fiscal_calendar import normalize_store_panel
from walk_forward_pipeline import (
    BacktestConfigError,
    ConfigBacktest,
    add_rolling_metrics,
    benchmark_table,
    collect_backtest,
    fit_with_retry,
    run_backtest,
    run_pipeline,
)

TARGETS = ["inside_sales", "food_service", "diesel", "unleaded"]


def _synthetic_panel(n_sites=3, n_days=400, start="2021-01-01", level_step=50.0):
    """Linear trend + weekly seasonality per site, no noise."""
    frames = []
    for k in range(n_sites):
        dates = pd.date_range(pd.Timestamp(start) + pd.Timedelta(days=11 * k), periods=n_days, freq="D")
        t = np.arange(n_days)
        base = 100.0 + k * level_step + 0.5 * t + 10.0 * np.sin(2 * np.pi * t / 7)
        frames.append(pd.DataFrame({
            "site_id": f"S{k + 1}",
            "date": dates,
            "inside_sales": base,
            "food_service": 0.3 * base,
            "diesel": 2.0 * base,
            "unleaded": 1.5 * base,
        }))
    return normalize_store_panel(pd.concat(frames, ignore_index=True))


class _FailsOnLargeSeries:
    """Fault injection: fails whenever the series level marks the faulty site."""
    name = "fragile"

    def __init__(self, threshold):
        self.threshold = threshold

    def fit(self, series):
        if series.max() > self.threshold:
            raise RuntimeError("solver diverged")
        return SeasonalNaiveModel().fit(series)


class _Flaky:
    name = "flaky"

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def fit(self, series):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientFitFailure("check failed: inconsistent state")
        return SeasonalNaiveModel().fit(series)


def test_result_columns_and_totals():
    panel = _synthetic_panel(n_sites=1, n_days=60)
    res = run_backtest(panel, targets=["inside_sales"], models=[SeasonalNaiveModel()], cutoffs=[14, 30])
    for col in ["site_id", "target_metric", "model_name", "start_init", "fc", "pre", "post", "sales",
                "tpred", "er", "rmse", "mae", "mape", "rmse_roll", "mape_roll", "mae_roll"]:
        assert col in res.columns
    assert len(res) == 2
    y = panel["inside_sales"].to_numpy()
    r = res[res["start_init"] == 14].iloc[0]
    assert r["pre"] == pytest.approx(y[:14].sum())
    assert r["post"] == pytest.approx(y[14:].sum())
    assert r["sales"] == pytest.approx(y.sum())
    assert r["tpred"] == pytest.approx(r["fc"] + r["pre"])
    assert r["er"] == pytest.approx(r["tpred"] - r["sales"])
    assert r["horizon_days"] == 46


def test_rolling_metric_at_last_cutoff_equals_point_metric():
    panel = _synthetic_panel(n_sites=1, n_days=120)
    res = run_backtest(panel, targets=["inside_sales"], models=["seasonal_naive"], cutoffs=[10, 20, 30])
    last = res[res["start_init"] == 30].iloc[0]
    assert last["rmse_roll"] == pytest.approx(last["rmse"])
    assert last["mae_roll"] == pytest.approx(last["mae"])
    assert last["mape_roll"] == pytest.approx(last["mape"])

    first = res[res["start_init"] == 10].iloc[0]
    ers = res["er"].to_numpy()
    assert first["rmse_roll"] == pytest.approx(np.sqrt(np.mean(ers ** 2)))


def test_rolling_metrics_pool_sites_from_cutoff_onward():
    rows = pd.DataFrame({
        "site_id": ["A", "B", "A", "B"],
        "target_metric": "diesel",
        "model_name": "m",
        "start_init": [1, 1, 2, 2],
        "er": [4.0, -2.0, 3.0, 0.0],
        "sales": [100.0, 0.0, 100.0, 50.0],
    })
    out = add_rolling_metrics(rows)
    at2 = out[out["start_init"] == 2].iloc[0]
    at1 = out[out["start_init"] == 1].iloc[0]
    assert at2["rmse_roll"] == pytest.approx(np.sqrt((9 + 0) / 2))
    assert at1["mae_roll"] == pytest.approx((4 + 2 + 3 + 0) / 4)
    # zero-sales row is left out of MAPE
    assert at1["mape_roll"] == pytest.approx((0.04 + 0.03 + 0.0) / 3 * 100)


def test_failed_unit_is_absent_and_others_unaffected():
    panel = _synthetic_panel(n_sites=3, n_days=60, level_step=10_000.0)
    model = _FailsOnLargeSeries(threshold=15_000.0)  # only S3 exceeds it
    run = collect_backtest(panel, targets=["inside_sales"], models=[model, SeasonalNaiveModel()],
                           cutoffs=[14, 21])
    res = run.results
    fragile = res[res["model_name"] == "fragile"]
    assert set(fragile["site_id"]) == {"S1", "S2"}
    assert len(fragile) == 4
    assert len(res[res["model_name"] == "seasonal_naive"]) == 6
    assert len(run.failures) == 2
    assert set(run.failures["site_id"]) == {"S3"}
    assert (run.failures["error_type"] == "FitError").all()
    assert "solver diverged" in run.failures["error"].iloc[0]


def test_insufficient_prefix_is_skipped_not_fatal():
    panel = _synthetic_panel(n_sites=1, n_days=40)
    run = collect_backtest(panel, targets=["inside_sales"], models=["seasonal_naive"], cutoffs=[3, 14])
    assert run.results["start_init"].tolist() == [14]
    assert run.failures["error_type"].tolist() == ["InsufficientData"]


def test_cutoff_beyond_history_is_ignored():
    panel = _synthetic_panel(n_sites=1, n_days=30)
    res = run_backtest(panel, targets=["inside_sales"], models=["seasonal_naive"], cutoffs=[14, 30, 45])
    assert res["start_init"].tolist() == [14]


def test_min_train_days():
    panel = _synthetic_panel(n_sites=1, n_days=40)
    run = collect_backtest(panel, targets=["inside_sales"], models=["seasonal_naive"],
                           cutoffs=[7, 14], min_train_days=10)
    assert run.results["start_init"].tolist() == [14]
    assert run.failures.empty


def test_fit_with_retry_recovers_from_transient_failure():
    flaky = _Flaky(failures=2)
    y = _synthetic_panel(n_sites=1, n_days=30)["inside_sales"]
    fitted = fit_with_retry(flaky, y, max_attempts=3, backoff=0.0)
    assert flaky.calls == 3
    assert len(fitted.forecast(5)) == 5


def test_fit_with_retry_is_bounded():
    flaky = _Flaky(failures=10)
    y = _synthetic_panel(n_sites=1, n_days=30)["inside_sales"]
    ctx = {"site_id": "S1", "target_metric": "diesel", "model_name": "flaky", "start_init": 21}
    with pytest.raises(FitError) as info:
        fit_with_retry(flaky, y, max_attempts=4, backoff=0.0, context=ctx)
    assert flaky.calls == 4
    assert info.value.context["site_id"] == "S1"
    assert info.value.context["start_init"] == 21
    assert info.value.context["attempts"] == 4
    assert isinstance(info.value.__cause__, TransientFitFailure)


def test_configuration_errors_are_fatal():
    panel = _synthetic_panel(n_sites=1, n_days=30)
    with pytest.raises(BacktestConfigError):
        run_backtest(panel, sites=[], models=["seasonal_naive"], cutoffs=[14])
    with pytest.raises(BacktestConfigError):
        run_backtest(panel, sites=["nope"], models=["seasonal_naive"], cutoffs=[14])
    with pytest.raises(BacktestConfigError):
        run_backtest(panel, targets=["margin"], models=["seasonal_naive"], cutoffs=[14])
    with pytest.raises(BacktestConfigError):
        run_backtest(panel, models=["seasonal_naive"], cutoffs=[0, 14])
    with pytest.raises(BacktestConfigError):
        run_backtest(panel.iloc[0:0], models=["seasonal_naive"], cutoffs=[14])
    with pytest.raises(BacktestConfigError):
        run_backtest(panel.drop(columns=["day_id2"]), models=["seasonal_naive"], cutoffs=[14])


def test_cancelled_run_returns_partial_results():
    panel = _synthetic_panel(n_sites=2, n_days=40)
    event = threading.Event()
    event.set()
    run = collect_backtest(panel, targets=["inside_sales"], models=["seasonal_naive"],
                           cutoffs=[14, 21], cancel_event=event)
    assert run.cancelled is True
    assert run.n_done == 0
    assert run.results.empty
    assert "rmse_roll" in run.results.columns


def test_parallel_run_matches_serial():
    panel = _synthetic_panel(n_sites=2, n_days=50)
    kwargs = dict(targets=["inside_sales", "diesel"], models=["seasonal_naive"], cutoffs=[14, 21, 28])
    serial = run_backtest(panel, **kwargs)
    parallel = run_backtest(panel, n_jobs=2, **kwargs)
    pd.testing.assert_frame_equal(serial, parallel)


def test_end_to_end_rolling_mape_improves_with_longer_prefix():
    panel = _synthetic_panel(n_sites=3, n_days=400)
    res = run_backtest(panel, sites=["S1", "S2", "S3"], targets=TARGETS,
                       models=[SeasonalNaiveModel()], cutoffs=[14, 21, 183])
    assert len(res) == 3 * 4 * 3
    for target in TARGETS:
        roll = (res[res["target_metric"] == target]
                .drop_duplicates("start_init").set_index("start_init")["mape_roll"])
        assert roll[14] > roll[21] > roll[183], target

    bench = benchmark_table(res, [14, 21, 183])
    assert len(bench) == 4 * 3
    assert set(bench["horizon_label"]) == {"2 weeks", "3 weeks", "6 months"}
    assert (bench["best_model_rmse"] == "seasonal_naive").all()


def test_benchmark_picks_best_model_per_cutoff():
    res = pd.DataFrame({
        "target_metric": ["diesel"] * 4,
        "model_name": ["ets", "arima", "ets", "arima"],
        "start_init": [14, 14, 21, 21],
        "rmse_roll": [5.0, 7.0, 9.0, 3.0],
        "mae_roll": [1.0, 1.0, 1.0, 1.0],
        "mape_roll": [8.0, 2.0, 4.0, 6.0],
    })
    bench = benchmark_table(res, [14, 21, 183]).set_index("start_init")
    assert bench.loc[14, "best_model_rmse"] == "ets"
    assert bench.loc[14, "best_model_mape"] == "arima"
    assert bench.loc[21, "best_model_rmse"] == "arima"
    assert bench.loc[21, "best_model_mape"] == "ets"
    assert 183 not in bench.index


def test_run_pipeline_writes_outputs(tmp_path):
    raw = _synthetic_panel(n_sites=2, n_days=60)[["site_id", "date", "week_id"] + TARGETS]
    data_path = tmp_path / "time_series.csv"
    raw.to_csv(data_path, index=False)
    attrs = pd.DataFrame({"site_id": ["S1", "S2"], "square_feet": [5000, 6000]})
    attrs_path = tmp_path / "site_attributes.csv"
    attrs.to_csv(attrs_path, index=False)

    cfg = ConfigBacktest(
        data_path=str(data_path),
        attributes_path=str(attrs_path),
        models=["seasonal_naive"],
        cutoffs=[14, 21],
        benchmark_cutoffs=[14, 21],
        keep_predictions=True,
        out_root=str(tmp_path / "out"),
    )
    out = Path(run_pipeline(cfg))

    results = pd.read_csv(out / "backtest_results.csv")
    assert len(results) == 2 * 2 * 4
    bench = pd.read_csv(out / "benchmark.csv")
    assert set(bench["start_init"]) == {14, 21}
    preds = pd.read_csv(out / "predictions_long.csv")
    assert len(preds) == 4 * 2 * ((60 - 14) + (60 - 21))
    assert (out / "failures.csv").exists()

    integrity = json.loads((out / "artifacts" / "integrity.json").read_text(encoding="utf-8"))
    assert integrity["calendar"]["week_ids_ok"] is True
    assert integrity["calendar"]["detected_week_start_weekday"] == 4
    assert integrity["site_keys"]["keys_ok"] is True
    config = json.loads((out / "artifacts" / "config.json").read_text(encoding="utf-8"))
    assert config["models"] == ["seasonal_naive"]
    assert (out / "artifacts" / "RUN.md").exists()


def test_parallel_run_cancelled_before_start_scores_nothing():
    panel = _synthetic_panel(n_sites=2, n_days=40)
    event = threading.Event()
    event.set()
    run = collect_backtest(panel, targets=["inside_sales"], models=["seasonal_naive"],
                           cutoffs=[14, 21], n_jobs=2, cancel_event=event)
    assert run.cancelled is True
    assert run.n_done == 0
    assert run.results.empty


def test_run_pipeline_reports_unsorted_source_and_gaps(tmp_path):
    raw = _synthetic_panel(n_sites=2, n_days=60)[["site_id", "date"] + TARGETS]
    gap_day = pd.Timestamp("2021-02-01")
    raw = raw[~((raw["site_id"] == "S1") & (raw["date"] == gap_day))]
    # S2 rows reversed, S1 kept in order
    raw = pd.concat([raw[raw["site_id"] == "S1"], raw[raw["site_id"] == "S2"].iloc[::-1]])
    data_path = tmp_path / "time_series.csv"
    raw.to_csv(data_path, index=False)

    cfg = ConfigBacktest(data_path=str(data_path), models=["seasonal_naive"], targets=["diesel"],
                         cutoffs=[14], benchmark_cutoffs=[14], out_root=str(tmp_path / "out"))
    out = Path(run_pipeline(cfg))

    integrity = json.loads((out / "artifacts" / "integrity.json").read_text(encoding="utf-8"))
    assert integrity["ordering_ok"] is False
    assert integrity["unsorted_sites"] == ["S2"]
    assert integrity["gaps_ok"] is False
    assert integrity["gap_sites"] == {"S1": 1}
    assert len(pd.read_csv(out / "backtest_results.csv")) == 2


def test_run_pipeline_warns_when_week_start_cannot_be_detected(tmp_path):
    raw = _synthetic_panel(n_sites=1, n_days=40)[["site_id", "date"] + TARGETS]
    raw["week_id"] = np.arange(len(raw)) + 1  # every day its own week
    data_path = tmp_path / "time_series.csv"
    raw.to_csv(data_path, index=False)

    cfg = ConfigBacktest(data_path=str(data_path), models=["seasonal_naive"], targets=["diesel"],
                         cutoffs=[14], benchmark_cutoffs=[14], out_root=str(tmp_path / "out"))
    out = Path(run_pipeline(cfg))

    calendar = json.loads((out / "artifacts" / "integrity.json").read_text(encoding="utf-8"))["calendar"]
    assert calendar["detected_week_start_weekday"] is None
    assert any("No complete 7-day fiscal week" in w for w in calendar["warnings"])
    assert calendar["week_ids_ok"] is False
    assert len(pd.read_csv(out / "backtest_results.csv")) == 1


def test_runner_maps_environment_onto_config():
    from run_walk_forward import config_from_env

    cfg = config_from_env({
        "BT_DATA_PATH": "data/ts.csv",
        "BT_SITES": "S1, S2",
        "BT_MODELS": "ets,arima",
        "BT_CUTOFFS": "14,21,183",
        "BT_PARAM_OVERRIDES": '{"ets": {"seasonal_period": 7}}',
        "BT_N_JOBS": "4",
        "BT_KEEP_PREDICTIONS": "yes",
        "BT_OUT_ROOT": "out",
    })
    assert cfg.data_path == "data/ts.csv"
    assert cfg.sites == ["S1", "S2"]
    assert cfg.models == ["ets", "arima"]
    assert cfg.cutoffs == [14, 21, 183]
    assert cfg.model_params == {"ets": {"seasonal_period": 7}}
    assert cfg.n_jobs == 4
    assert cfg.keep_predictions is True
    # unset variables fall back to the config defaults
    assert cfg.targets == TARGETS
    assert cfg.benchmark_cutoffs == [14, 21, 183]
    assert cfg.week_start_weekday == 4


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
