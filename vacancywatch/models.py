"""Core data models for vacancywatch."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union


class VacancyWatchError(Exception):
    """Base class for errors raised by vacancywatch."""


class ExtractionError(VacancyWatchError):
    """Raised by an extraction adapter when a property could not be fetched."""


class ConfigurationError(VacancyWatchError, ValueError):
    """Raised for malformed property targets or run configuration."""


_RAW_FIELDS = ("unit_key", "unit_number", "unit_id", "price", "available_on", "floor_plan_id")
_RAW_ALIASES = {"id": "unit_id", "availability": "available_on"}


@dataclass
class RawUnitRecord:
    """Source-specific unit record handed over by an extraction adapter."""

    unit_key: Optional[str] = None
    unit_number: Optional[str] = None
    unit_id: Optional[str] = None
    price: Union[str, float, int, None] = None
    available_on: Optional[str] = None
    floor_plan_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RawUnitRecord":
        """Build a record from a loose JSON object; unknown keys land in ``meta``."""
        values: Dict[str, Any] = {}
        meta: Dict[str, Any] = dict(data.get("meta") or {})
        for key, value in data.items():
            if key == "meta":
                continue
            name = _RAW_ALIASES.get(key, key)
            if name in _RAW_FIELDS:
                if values.get(name) is None:
                    values[name] = value
            else:
                meta.setdefault(key, value)

        for name in ("unit_key", "unit_number", "unit_id", "floor_plan_id", "available_on"):
            if values.get(name) is not None:
                values[name] = str(values[name])
        return cls(meta=meta, **values)


@dataclass(frozen=True)
class NormalizedKey:
    """Canonical identity derived from a raw record."""

    unit_key: str
    unit_number: Optional[str]


@dataclass
class CanonicalUnit:
    """Normalized unit as stored inside a snapshot."""

    unit_key: str
    unit_number: Optional[str] = None
    available_on: Optional[str] = None
    price: Optional[float] = None
    floor_plan_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanonicalUnit":
        return cls(
            unit_key=str(data["unit_key"]),
            unit_number=data.get("unit_number"),
            available_on=data.get("available_on"),
            price=data.get("price"),
            floor_plan_id=data.get("floor_plan_id"),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class BuildResult:
    """Canonical units produced from one adapter run plus drop diagnostics."""

    units: List[CanonicalUnit]
    dropped_count: int = 0
    duplicate_count: int = 0


@dataclass
class Snapshot:
    """Full inventory of one property on one calendar day."""

    property_id: str
    snapshot_date: str
    units: List[CanonicalUnit]
    created_at: str
    updated_at: str
    suspect_empty: bool = False

    @property
    def unit_keys(self) -> List[str]:
        return [unit.unit_key for unit in self.units]


class EventType(str, Enum):
    APPEARED = "appeared"
    DISAPPEARED = "disappeared"


@dataclass(frozen=True)
class UnitEvent:
    """Persisted appeared/disappeared record."""

    property_id: str
    event_date: str
    unit_key: str
    unit_number: Optional[str]
    event_type: EventType
    source: str


@dataclass
class DiffResult:
    """Holds the result of comparing two unit key sets."""

    appeared: List[str]
    disappeared: List[str]
    unchanged: List[str]


@dataclass(frozen=True)
class UnitChange:
    """Field-level change for a unit present in both snapshots."""

    unit_key: str
    unit_number: Optional[str]
    fields: Sequence[str]
    before: Dict[str, Any]
    after: Dict[str, Any]


@dataclass(frozen=True)
class ExtractionSuccess:
    records: Sequence[RawUnitRecord]


@dataclass(frozen=True)
class ExtractionSuspectEmpty:
    """Adapter finished without error but returned nothing."""


@dataclass(frozen=True)
class ExtractionFailed:
    reason: str


ExtractionResult = Union[ExtractionSuccess, ExtractionSuspectEmpty, ExtractionFailed]


@dataclass(frozen=True)
class PropertyTarget:
    """A managed property and the parameters its adapter needs."""

    property_id: str
    name: str = ""
    platform: str = ""
    options: Mapping[str, Any] = field(default_factory=dict)
    skip: bool = False
    skip_reason: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.name} ({self.property_id})" if self.name else self.property_id


class RunStatus(str, Enum):
    SUCCESS = "success"
    SUSPECT_EMPTY = "suspect_empty"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStage(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    CANONICALIZING = "canonicalizing"
    DIFFING = "diffing"
    PERSISTING_SNAPSHOT = "persisting_snapshot"
    WRITING_EVENTS = "writing_events"
    DONE = "done"


@dataclass
class PropertyRunResult:
    """Outcome of one property run, reported to the batch driver."""

    property_id: str
    status: RunStatus
    stage: RunStage = RunStage.PENDING
    reason: Optional[str] = None
    raw_count: int = 0
    unit_count: int = 0
    dropped_count: int = 0
    appeared: List[str] = field(default_factory=list)
    disappeared: List[str] = field(default_factory=list)
    changed: int = 0
    events_written: int = 0
    name: str = ""


@dataclass
class BatchSummary:
    """Aggregated result returned by a batch run."""

    executed_at: str
    snapshot_date: str
    source: str
    results: List[PropertyRunResult]

    def _with_status(self, status: RunStatus) -> List[PropertyRunResult]:
        return [result for result in self.results if result.status is status]

    @property
    def succeeded(self) -> List[PropertyRunResult]:
        return self._with_status(RunStatus.SUCCESS)

    @property
    def suspect_empty(self) -> List[PropertyRunResult]:
        return self._with_status(RunStatus.SUSPECT_EMPTY)

    @property
    def failed(self) -> List[PropertyRunResult]:
        return self._with_status(RunStatus.FAILED)

    @property
    def skipped(self) -> List[PropertyRunResult]:
        return self._with_status(RunStatus.SKIPPED)

    @property
    def appeared_total(self) -> int:
        return sum(len(result.appeared) for result in self.results)

    @property
    def disappeared_total(self) -> int:
        return sum(len(result.disappeared) for result in self.results)

    @property
    def events_written_total(self) -> int:
        return sum(result.events_written for result in self.results)
