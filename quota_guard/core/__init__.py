"""
Core modules for Quota Guard.

This package contains the budget computation: per-run allowances,
weekly budget calibration, exhaustion projection and usage trends.
"""

from .allowance import (
    AllowanceManager,
    AllowanceResult,
    BudgetEstimate,
    BudgetSource,
    BudgetSourceKind,
    Confidence,
    TrendPredictor,
)
from .calibrator import CalibrationResult, Calibrator
from .errors import (
    InvalidBudget,
    InvalidMode,
    ProviderUnavailable,
    QuotaGuardError,
    UpstreamQueryFailed,
)
from .projection import BudgetProjection, ProjectionEngine, ProjectionSummary
from .trends import TrendAnalyzer, UsageProfile
from .usage import UsageSource, snapshot_usage_source

__all__ = [
    "AllowanceManager",
    "AllowanceResult",
    "BudgetEstimate",
    "BudgetProjection",
    "BudgetSource",
    "BudgetSourceKind",
    "CalibrationResult",
    "Calibrator",
    "Confidence",
    "InvalidBudget",
    "InvalidMode",
    "ProjectionEngine",
    "ProjectionSummary",
    "ProviderUnavailable",
    "QuotaGuardError",
    "TrendAnalyzer",
    "TrendPredictor",
    "UpstreamQueryFailed",
    "UsageProfile",
    "UsageSource",
    "snapshot_usage_source",
]
