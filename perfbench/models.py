import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({SCHEMA_VERSION})


class Measurement(BaseModel):
    name: str
    value: Optional[float] = None
    unit: str = ""
    error: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("value")
    @classmethod
    def _check_finite(cls, value: Optional[float]) -> Optional[float]:
        # JSON has no NaN/Inf; they would come back from the store as null
        if value is not None and not math.isfinite(value):
            raise ValueError(f"measurement value must be finite, got {value}")
        return value

    @property
    def available(self) -> bool:
        return self.value is not None


class RunRecord(BaseModel):
    """Result of one benchmark scenario under a configuration label."""

    schema_version: int = SCHEMA_VERSION
    label: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scenario_config: dict[str, Any] = Field(default_factory=dict)
    target: int = Field(ge=0)
    completed: int = Field(ge=0)
    timed_out: bool = False
    cancelled: bool = False
    measurements: List[Measurement] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("label")
    @classmethod
    def _check_label(cls, value: str) -> str:
        return validate_label(value)

    @model_validator(mode="after")
    def _check_counts(self) -> "RunRecord":
        if self.completed > self.target:
            raise ValueError(f"completed ({self.completed}) exceeds target ({self.target})")
        names = [m.name for m in self.measurements]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate measurement names: {', '.join(duplicates)}")
        return self

    @property
    def partial(self) -> bool:
        return self.completed < self.target

    def measurement(self, name: str) -> Optional[Measurement]:
        for m in self.measurements:
            if m.name == name:
                return m
        return None


class ComparisonStatus(str, Enum):
    COMPARED = "compared"
    NOT_COMPUTABLE = "not_computable"
    NOT_AVAILABLE = "not_available"


class Verdict(str, Enum):
    IMPROVED = "improved"
    UNCHANGED = "unchanged"
    REGRESSED = "regressed"


class MetricComparison(BaseModel):
    name: str
    unit: str = ""
    before: Optional[float] = None
    after: Optional[float] = None
    percent_delta: Optional[float] = None
    status: ComparisonStatus
    verdict: Optional[Verdict] = None


class ComparisonReport(BaseModel):
    before_label: str
    after_label: str
    before_timestamp: datetime
    after_timestamp: datetime
    rows: List[MetricComparison] = Field(default_factory=list)
    before_only: List[str] = Field(default_factory=list)
    after_only: List[str] = Field(default_factory=list)


class DiskPressureOutcome(str, Enum):
    POD_SURVIVED = "pod_survived"
    POD_EVICTED_REPLACED = "pod_evicted_replaced"
    NO_REPLACEMENT = "no_replacement"


class CheckResult(BaseModel):
    name: str
    passed: bool
    detail: str = ""


LABEL_MAX_LENGTH = 40
_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def validate_label(label: str) -> str:
    """Labels name result directories and Kubernetes objects, so keep them DNS-safe."""
    if len(label) > LABEL_MAX_LENGTH or not _LABEL_RE.match(label):
        raise ValueError(
            f"invalid label {label!r}: use lowercase letters, digits and '-', "
            f"at most {LABEL_MAX_LENGTH} characters"
        )
    return label
