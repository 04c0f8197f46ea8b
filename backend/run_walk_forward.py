from __future__ import annotations
import json, os
from pathlib import Path
from datetime import datetime
from walk_forward_pipeline import ConfigBacktest, run_pipeline

def _ts(): return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

def _list(v, cast=str):
    if v in (None, "", "null", "None"): return None
    return [cast(x.strip()) for x in v.split(",") if x.strip()]

def config_from_env(env=None) -> ConfigBacktest:
    env = os.environ if env is None else env
    return ConfigBacktest(
        data_path       = env.get("BT_DATA_PATH", "./data/time_series_data.csv"),
        attributes_path = env.get("BT_ATTRIBUTES_PATH") or None,
        sites           = _list(env.get("BT_SITES")),
        targets         = _list(env.get("BT_TARGETS")),
        week_start_weekday = int(env.get("BT_WEEK_START_WEEKDAY", "4")),
        reference_date  = env.get("BT_REFERENCE_DATE", "2021-01-01"),
        models          = _list(env.get("BT_MODELS")),
        model_params    = json.loads(env.get("BT_PARAM_OVERRIDES") or "{}"),
        max_cutoff      = int(env.get("BT_MAX_CUTOFF", "365")),
        cutoffs         = _list(env.get("BT_CUTOFFS"), int),
        benchmark_cutoffs = _list(env.get("BT_BENCHMARK_CUTOFFS"), int),
        min_train_days  = int(env.get("BT_MIN_TRAIN_DAYS", "1")),
        n_jobs          = int(env.get("BT_N_JOBS", "1")),
        max_fit_attempts= int(env.get("BT_MAX_FIT_ATTEMPTS", "3")),
        retry_backoff   = float(env.get("BT_RETRY_BACKOFF", "0.5")),
        keep_predictions= env.get("BT_KEEP_PREDICTIONS", "false").lower() in {"1","true","yes"},
        out_root        = env.get("BT_OUT_ROOT", str((Path.cwd() / "outputs" / "backtest").resolve())),
    )

if __name__ == "__main__":
    cfg = config_from_env()

    run_dir = Path(cfg.out_root); run_dir.mkdir(parents=True, exist_ok=True)
    log = run_dir / "backend_run.log"
    log.write_text("="*80 + f"\n[{_ts()}] Walk-forward backtest run starting\n" + json.dumps(cfg.__dict__, indent=2) + "\n" + "="*80 + "\n", encoding="utf-8")

    try:
        out = run_pipeline(cfg)
        with log.open("a", encoding="utf-8") as f:
            f.write(f"[{_ts()}] Completed OK\n")
            f.write(f"Outputs: {out}\n")
            f.write("="*80 + "\n")
    except Exception as e:
        with log.open("a", encoding="utf-8") as f:
            f.write(f"[{_ts()}] ERROR: {e}\n")
        raise
