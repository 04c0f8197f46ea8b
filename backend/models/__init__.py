"""Candidate forecasting models used by the walk-forward backtester."""

from . import registry  # re-export for `from models import registry`
from .registry import FitError, InsufficientData, TransientFitFailure
