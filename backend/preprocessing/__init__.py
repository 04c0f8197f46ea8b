"""Fiscal calendar normalisation and data-quality checks for store daily series."""

from .fiscal_calendar import (
    FRIDAY,
    DEFAULT_REFERENCE_DATE,
    CalendarDay,
    CalendarInconsistency,
    ContinuousIndexState,
    advance_continuous_index,
    assign_continuous_index,
    build_calendar,
    detect_week_start,
    fiscal_year_start,
    normalize_store_panel,
    validate_week_ids,
)
from .integrity import (
    check_site_keys,
    check_site_ordering,
    compute_integrity_report,
    zero_sales_report,
)

__all__ = [
    "FRIDAY",
    "DEFAULT_REFERENCE_DATE",
    "CalendarDay",
    "CalendarInconsistency",
    "ContinuousIndexState",
    "advance_continuous_index",
    "assign_continuous_index",
    "build_calendar",
    "detect_week_start",
    "fiscal_year_start",
    "normalize_store_panel",
    "validate_week_ids",
    "check_site_keys",
    "check_site_ordering",
    "compute_integrity_report",
    "zero_sales_report",
]
