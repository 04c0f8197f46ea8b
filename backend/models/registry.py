"""
Candidate forecasting models for the walk-forward backtester.

Every model follows the same two-step contract:

    fitted = model.fit(series)          # series: pd.Series on a daily index
    fc = fitted.forecast(n_steps)       # DataFrame ["date","yhat","yhat_lower","yhat_upper"]

Model selection inside a family (ETS components, ARIMA order) happens in ``fit``.
A failed fit raises FitError (InsufficientData for prefixes that are too short);
platform-specific instabilities raise TransientFitFailure so callers can retry.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.compose import TransformedTargetRegressor
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVR
from statsmodels.tools.sm_exceptions import ConvergenceWarning
from statsmodels.tsa.holtwinters import ExponentialSmoothing
from statsmodels.tsa.statespace.sarimax import SARIMAX
from xgboost import XGBRegressor
from xgboost.core import XGBoostError


class FitError(Exception):
    """A candidate model could not be fitted on a training prefix."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context)

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{base} [{ctx}]"


class InsufficientData(FitError):
    """Training prefix too short for the model family."""


class TransientFitFailure(Exception):
    """Non-deterministic fit failure; the same fit may succeed on retry."""


class FittedModel(Protocol):
    def forecast(self, n_steps: int) -> pd.DataFrame:
        ...


class CandidateModel(Protocol):
    name: str

    def fit(self, series: pd.Series) -> FittedModel:
        ...


def _as_series(series: pd.Series) -> pd.Series:
    y = pd.Series(series).astype(float)
    if y.isna().any():
        raise FitError("Training series contains NaN values.")
    return y


def _future_dates(index: pd.Index, n_steps: int) -> pd.Index:
    if isinstance(index, pd.DatetimeIndex) and len(index):
        return pd.date_range(index[-1] + pd.Timedelta(days=1), periods=int(n_steps), freq="D")
    start = len(index)
    return pd.RangeIndex(start, start + int(n_steps))


def _forecast_frame(dates: pd.Index, yhat, lower=None, upper=None) -> pd.DataFrame:
    yhat = np.asarray(yhat, dtype=float)
    nan = np.full(len(yhat), np.nan, dtype=float)
    return pd.DataFrame(
        {
            "date": dates,
            "yhat": yhat,
            "yhat_lower": nan if lower is None else np.asarray(lower, dtype=float),
            "yhat_upper": nan if upper is None else np.asarray(upper, dtype=float),
        }
    )


def _check_steps(n_steps: int) -> int:
    n = int(n_steps)
    if n < 0:
        raise ValueError(f"n_steps must be non-negative, got {n_steps}")
    return n


# =========================
# Seasonal naive
# =========================

@dataclass
class _SeasonalNaiveFit:
    last_season: np.ndarray
    index: pd.Index

    def forecast(self, n_steps: int) -> pd.DataFrame:
        n = _check_steps(n_steps)
        reps = int(np.ceil(n / len(self.last_season))) if n else 0
        yhat = np.tile(self.last_season, reps)[:n]
        return _forecast_frame(_future_dates(self.index, n), yhat)


@dataclass(frozen=True)
class SeasonalNaiveModel:
    """Baseline: repeat the last observed week."""
    name: str = "seasonal_naive"
    season_length: int = 7

    def fit(self, series: pd.Series) -> _SeasonalNaiveFit:
        y = _as_series(series)
        if len(y) < self.season_length:
            raise InsufficientData(
                f"Need at least {self.season_length} observations, got {len(y)}."
            )
        return _SeasonalNaiveFit(last_season=y.to_numpy()[-self.season_length:].copy(), index=y.index)


# =========================
# Statistical (statsmodels)
# =========================

@dataclass
class _ETSFit:
    result: Any
    index: pd.Index
    sigma: float

    def forecast(self, n_steps: int) -> pd.DataFrame:
        n = _check_steps(n_steps)
        mean = np.asarray(self.result.forecast(n), dtype=float) if n else np.array([], dtype=float)
        ci = 1.96 * self.sigma
        return _forecast_frame(_future_dates(self.index, n), mean, mean - ci, mean + ci)


@dataclass(frozen=True)
class ETSModel:
    """Exponential smoothing; trend/seasonal components chosen by AIC."""
    name: str = "ets"
    seasonal_period: int = 7
    min_obs: int = 10

    def fit(self, series: pd.Series) -> _ETSFit:
        y = _as_series(series)
        if len(y) < self.min_obs:
            raise InsufficientData(f"Need at least {self.min_obs} observations for ETS, got {len(y)}.")

        values = y.to_numpy()
        specs = [dict(trend=None, seasonal=None), dict(trend="add", seasonal=None)]
        if len(values) >= 2 * self.seasonal_period:
            specs.append(dict(trend="add", seasonal="add"))

        best, best_aic = None, np.inf
        for spec in specs:
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", ConvergenceWarning)
                    warnings.simplefilter("ignore", RuntimeWarning)
                    m = ExponentialSmoothing(
                        values,
                        trend=spec["trend"],
                        seasonal=spec["seasonal"],
                        seasonal_periods=(self.seasonal_period if spec["seasonal"] else None),
                        damped_trend=(spec["trend"] is not None),
                        initialization_method="estimated",
                    )
                    r = m.fit(optimized=True, use_brute=False)
            except (ValueError, np.linalg.LinAlgError):
                continue
            if np.isfinite(r.aic) and r.aic < best_aic:
                best_aic, best = r.aic, r
        if best is None:
            raise FitError("No ETS specification could be fitted.")

        resid = values - np.asarray(best.fittedvalues, dtype=float)
        sigma = float(np.nanstd(resid)) if len(resid) > 1 else 0.0
        return _ETSFit(result=best, index=y.index, sigma=sigma)


@dataclass
class _ArimaFit:
    result: Any
    index: pd.Index
    alpha: float

    def forecast(self, n_steps: int) -> pd.DataFrame:
        n = _check_steps(n_steps)
        if n == 0:
            return _forecast_frame(_future_dates(self.index, 0), [])
        f = self.result.get_forecast(steps=n)
        ci = np.asarray(f.conf_int(alpha=self.alpha), dtype=float)
        return _forecast_frame(_future_dates(self.index, n), f.predicted_mean, ci[:, 0], ci[:, 1])


@dataclass(frozen=True)
class ArimaModel:
    """SARIMAX over a small order grid, best by AIC."""
    name: str = "arima"
    seasonal_period: int = 7
    min_obs: int = 20
    alpha: float = 0.05
    candidates: Tuple[Tuple[Tuple[int, int, int], Tuple[int, int, int, int]], ...] = ()

    def _orders(self):
        if self.candidates:
            return list(self.candidates)
        return [
            ((1, 0, 1), (0, 0, 0, 0)),
            ((1, 1, 1), (0, 0, 0, 0)),
            ((1, 0, 1), (1, 0, 1, self.seasonal_period)),
        ]

    def fit(self, series: pd.Series) -> _ArimaFit:
        y = _as_series(series)
        if len(y) < self.min_obs:
            raise InsufficientData(f"Need at least {self.min_obs} observations for ARIMA, got {len(y)}.")

        values = y.to_numpy()
        best, best_aic = None, np.inf
        for order, seas in self._orders():
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", ConvergenceWarning)
                    warnings.simplefilter("ignore", UserWarning)
                    m = SARIMAX(values, order=order, seasonal_order=seas,
                                enforce_stationarity=False, enforce_invertibility=False)
                    r = m.fit(disp=False, maxiter=200)
            except (ValueError, np.linalg.LinAlgError):
                continue
            if np.isfinite(r.aic) and r.aic < best_aic:
                best_aic, best = r.aic, r
        if best is None:
            raise FitError("No ARIMA order could be fitted.")
        return _ArimaFit(result=best, index=y.index, alpha=self.alpha)


# =========================
# Machine learning on lag features
# =========================

def _lag_features(values: np.ndarray, n_lags: int, start_pos: int = 0) -> Tuple[np.ndarray, np.ndarray]:
    """Rows [lag_1..lag_n, weekday one-hot] for every position with a full lag window."""
    X, y = [], []
    for i in range(n_lags, len(values)):
        X.append(_feature_row(values[i - n_lags:i], start_pos + i, n_lags))
        y.append(values[i])
    return np.asarray(X, dtype=float), np.asarray(y, dtype=float)


def _feature_row(window: np.ndarray, pos: int, n_lags: int) -> List[float]:
    lags = [float(window[-j - 1]) for j in range(n_lags)]
    dow = [0.0] * 7
    dow[pos % 7] = 1.0
    return lags + dow


@dataclass
class _LagRegressorFit:
    estimator: Any
    history: np.ndarray
    n_obs: int
    n_lags: int
    sigma: float
    index: pd.Index

    def forecast(self, n_steps: int) -> pd.DataFrame:
        n = _check_steps(n_steps)
        window = list(self.history[-self.n_lags:])
        yhat = []
        for k in range(n):
            row = _feature_row(np.asarray(window), self.n_obs + k, self.n_lags)
            pred = float(self.estimator.predict(np.asarray([row]))[0])
            yhat.append(pred)
            window = window[1:] + [pred]
        yhat = np.asarray(yhat, dtype=float)
        ci = 1.96 * self.sigma
        return _forecast_frame(_future_dates(self.index, n), yhat, yhat - ci, yhat + ci)


def _fit_lag_regressor(estimator, y: pd.Series, n_lags: int, min_rows: int) -> _LagRegressorFit:
    values = y.to_numpy()
    X, target = _lag_features(values, n_lags)
    if len(X) < min_rows:
        raise InsufficientData(
            f"Need at least {n_lags + min_rows} observations for lag features, got {len(values)}."
        )
    estimator.fit(X, target)
    resid = target - np.asarray(estimator.predict(X), dtype=float)
    sigma = float(np.std(resid)) if len(resid) > 1 else 0.0
    return _LagRegressorFit(
        estimator=estimator, history=values.copy(), n_obs=len(values),
        n_lags=n_lags, sigma=sigma, index=y.index,
    )


@dataclass(frozen=True)
class XGBoostModel:
    """Gradient-boosted trees on lag + weekday features, recursive forecast."""
    name: str = "xgboost"
    n_lags: int = 7
    n_estimators: int = 200
    max_depth: int = 4
    learning_rate: float = 0.05
    min_rows: int = 10
    random_state: int = 42

    def fit(self, series: pd.Series) -> _LagRegressorFit:
        y = _as_series(series)
        est = XGBRegressor(
            n_estimators=self.n_estimators,
            max_depth=self.max_depth,
            learning_rate=self.learning_rate,
            objective="reg:squarederror",
            tree_method="hist",
            random_state=self.random_state,
            n_jobs=1,
            verbosity=0,
        )
        try:
            return _fit_lag_regressor(est, y, self.n_lags, self.min_rows)
        except XGBoostError as e:
            raise TransientFitFailure(str(e)) from e


@dataclass(frozen=True)
class SVRModel:
    """Support vector regression on scaled lag + weekday features."""
    name: str = "svr"
    n_lags: int = 7
    kernel: str = "rbf"
    C: float = 10.0
    epsilon: float = 0.1
    min_rows: int = 10

    def fit(self, series: pd.Series) -> _LagRegressorFit:
        y = _as_series(series)
        est = TransformedTargetRegressor(
            regressor=Pipeline([
                ("scaler", StandardScaler()),
                ("svr", SVR(kernel=self.kernel, C=self.C, epsilon=self.epsilon)),
            ]),
            transformer=StandardScaler(),
        )
        return _fit_lag_regressor(est, y, self.n_lags, self.min_rows)


# =========================
# Ensemble
# =========================

@dataclass
class _EnsembleFit:
    members: List[Any]
    member_names: List[str]

    def forecast(self, n_steps: int) -> pd.DataFrame:
        frames = [m.forecast(n_steps) for m in self.members]
        stack = lambda col: np.vstack([f[col].to_numpy(dtype=float) for f in frames])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            lower = np.nanmean(stack("yhat_lower"), axis=0)
            upper = np.nanmean(stack("yhat_upper"), axis=0)
        return _forecast_frame(frames[0]["date"], stack("yhat").mean(axis=0), lower, upper)


@dataclass(frozen=True)
class EnsembleModel:
    """Mean of member forecasts; members that fail to fit are dropped."""
    name: str = "ets_arima_ensemble"
    members: Tuple[Any, ...] = field(default_factory=lambda: (ETSModel(), ArimaModel()))

    def fit(self, series: pd.Series) -> _EnsembleFit:
        fitted, names, errors = [], [], []
        for m in self.members:
            try:
                fitted.append(m.fit(series))
                names.append(m.name)
            except FitError as e:
                errors.append(f"{m.name}: {e}")
        if not fitted:
            raise FitError("All ensemble members failed: " + "; ".join(errors))
        return _EnsembleFit(members=fitted, member_names=names)


_MODELS: Dict[str, type] = {
    "seasonal_naive": SeasonalNaiveModel,
    "ets": ETSModel,
    "arima": ArimaModel,
    "xgboost": XGBoostModel,
    "svr": SVRModel,
    "ets_arima_ensemble": EnsembleModel,
}


def list_models() -> List[str]:
    return list(_MODELS)


def get(name: str, **params: Any) -> CandidateModel:
    cls: Optional[type] = _MODELS.get(name)
    if cls is None:
        raise KeyError(f"Unknown model: {name}")
    return cls(**params)


def build_models(names: Sequence[str], params: Optional[Dict[str, dict]] = None) -> List[CandidateModel]:
    params = params or {}
    return [get(n, **params.get(n, {})) for n in names]
