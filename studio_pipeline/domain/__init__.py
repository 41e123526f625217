"""Domain models for the studio ingestion pipeline."""

from .exceptions import InvalidTransitionError
from .models import (
    CATEGORY_LABELS,
    CATEGORY_ORDER,
    OPTIONAL_CATEGORIES,
    CategoryState,
    CategoryStatus,
    DeliveryMethod,
    ErrorKind,
    FetchWindow,
    PipelineRun,
    RawReport,
    ReportCategory,
    RunState,
    WatermarkEntry,
)

__all__ = [
    "ReportCategory",
    "CATEGORY_ORDER",
    "CATEGORY_LABELS",
    "OPTIONAL_CATEGORIES",
    "CategoryState",
    "CategoryStatus",
    "RunState",
    "DeliveryMethod",
    "ErrorKind",
    "PipelineRun",
    "WatermarkEntry",
    "FetchWindow",
    "RawReport",
    "InvalidTransitionError",
]
