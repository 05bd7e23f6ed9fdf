import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Azure DevOps emits up to seven fractional digits; datetime holds six.
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")

T = TypeVar("T")


# --- Wire Models ---


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )


class ResponseEnvelope(WireModel, Generic[T]):
    """The `{count, value}` wrapper every list endpoint returns."""

    count: int = 0
    value: list[T] = Field(default_factory=list)


class Pool(WireModel):
    id: int
    name: str
    size: int = 0
    is_hosted: bool = False


class Agent(WireModel):
    id: int
    name: str
    size: int = 0
    version: str = ""
    enabled: bool = False
    status: str = ""
    # Not sent by the service; stamped on by the client at fetch time.
    pool_id: int | None = None


class Job(WireModel):
    request_id: int
    job_id: str = ""
    name: str = ""
    queue_time: datetime | None = None
    assign_time: datetime | None = None
    receive_time: datetime | None = None
    finish_time: datetime | None = None
    result: str | None = None
    plan_type: str | None = None

    @field_validator(
        "queue_time", "assign_time", "receive_time", "finish_time", mode="before"
    )
    @classmethod
    def _trim_timestamp(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, str):
            return _EXCESS_FRACTION.sub(r"\1", value)
        return value

    @field_validator("queue_time", "assign_time", "receive_time", "finish_time")
    @classmethod
    def _zero_to_none(cls, value: datetime | None) -> datetime | None:
        # 0001-01-01T00:00:00 is how the service says "not reached yet"
        if value is None or value.year <= 1:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_queued(self) -> bool:
        return self.assign_time is None

    @property
    def is_finished(self) -> bool:
        return not self.is_queued and self.finish_time is not None

    @property
    def is_running(self) -> bool:
        return not self.is_queued and self.finish_time is None


# --- Pipeline State ---


@dataclass
class PipelineContext:
    """Per-pool accumulator handed from one pipeline stage to the next."""

    pool: Pool
    agents: list[Agent] = field(default_factory=list)
    jobs: list[Job] = field(default_factory=list)
    jobs_available: bool = True


# --- Metric Records ---


@dataclass(frozen=True)
class HistogramObservation:
    bounds: tuple[float, ...]
    cumulative_counts: tuple[int, ...]
    count: int
    sum: float


@dataclass(frozen=True)
class AgentStateCount:
    enabled: bool
    status: str
    pool: str
    count: int


@dataclass(frozen=True)
class JobCount:
    kind: Literal["queued", "running", "total"]
    pool: str
    count: int


@dataclass(frozen=True)
class JobDuration:
    kind: Literal["total", "queue", "run"]
    pool: str
    observation: HistogramObservation


@dataclass(frozen=True)
class ScrapeDuration:
    seconds: float


MetricRecord = AgentStateCount | JobCount | JobDuration | ScrapeDuration
