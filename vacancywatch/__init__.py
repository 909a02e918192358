"""vacancywatch package initialization."""

from .adapters import (
    ExtractionAdapter,
    JsonFileAdapter,
    RentCafeAdapter,
    SightMapAdapter,
    build_adapter,
)
from .config import load_property_targets
from .db import Database
from .diff import detect_changes, diff_units
from .models import (
    BatchSummary,
    CanonicalUnit,
    ConfigurationError,
    DiffResult,
    EventType,
    ExtractionError,
    PropertyRunResult,
    PropertyTarget,
    RawUnitRecord,
    RunStage,
    RunStatus,
    Snapshot,
    UnitChange,
    UnitEvent,
)
from .normalize import build_canonical_units, normalize_unit_key, unit_number_from_key
from .retry import RetryPolicy
from .runner import VacancyRunner

__all__ = [
    "BatchSummary",
    "CanonicalUnit",
    "ConfigurationError",
    "Database",
    "DiffResult",
    "EventType",
    "ExtractionAdapter",
    "ExtractionError",
    "JsonFileAdapter",
    "PropertyRunResult",
    "PropertyTarget",
    "RawUnitRecord",
    "RentCafeAdapter",
    "RetryPolicy",
    "RunStage",
    "RunStatus",
    "SightMapAdapter",
    "Snapshot",
    "UnitChange",
    "UnitEvent",
    "VacancyRunner",
    "build_adapter",
    "build_canonical_units",
    "detect_changes",
    "diff_units",
    "load_property_targets",
    "normalize_unit_key",
    "unit_number_from_key",
]
